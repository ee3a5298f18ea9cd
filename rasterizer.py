"""Headless OpenGL rasterization of a SceneDescription with pyrender.

Import this module only on the thread that owns the GPU context, after
``PYOPENGL_PLATFORM`` has been set.
"""

import logging
from typing import Dict

import numpy as np
import pyrender
from PIL import Image

from render_errors import RasterizerError
from scene_setup import SceneDescription

logger = logging.getLogger("preview_renderer.rasterizer")

DEFAULT_VIEWPORT = 512


def make_material(texture: np.ndarray) -> pyrender.MetallicRoughnessMaterial:
    """Texture-sampled, alpha-blended, double-sided material."""
    return pyrender.MetallicRoughnessMaterial(
        baseColorFactor=[1.0, 1.0, 1.0, 1.0],
        baseColorTexture=pyrender.Texture(source=texture, source_channels="RGBA"),
        metallicFactor=0.0,
        roughnessFactor=1.0,
        alphaMode="BLEND",
        doubleSided=True,
    )


def to_pyrender_scene(description: SceneDescription) -> pyrender.Scene:
    scene = pyrender.Scene(bg_color=list(description.clear_color), ambient_light=np.zeros(3))

    camera = description.camera
    scene.add(
        pyrender.PerspectiveCamera(
            yfov=camera.yfov,
            znear=camera.znear,
            zfar=camera.zfar,
            aspectRatio=camera.aspect_ratio,
        ),
        pose=camera.pose,
    )

    materials: Dict[int, pyrender.MetallicRoughnessMaterial] = {}
    for draw in description.draws:
        if draw.texture_index not in materials:
            materials[draw.texture_index] = make_material(description.textures[draw.texture_index])
        mesh = pyrender.Mesh.from_trimesh(draw.primitive.mesh, material=materials[draw.texture_index], smooth=False)
        scene.add(mesh, pose=draw.pose)

    light = description.light
    if light is not None:
        pose = np.eye(4)
        pose[:3, 3] = light.position
        scene.add(pyrender.PointLight(color=np.array(light.color), intensity=light.intensity), pose=pose)

    return scene


def render_flags(description: SceneDescription) -> int:
    flags = pyrender.RenderFlags.RGBA | pyrender.RenderFlags.SKIP_CULL_FACES
    if description.flat_shading:
        flags |= pyrender.RenderFlags.FLAT
    return flags


class Rasterizer:
    """Owns one offscreen GL context. Not thread-safe; use from a single thread."""

    def __init__(self, width: int = DEFAULT_VIEWPORT, height: int = DEFAULT_VIEWPORT):
        try:
            self._renderer = pyrender.OffscreenRenderer(viewport_width=width, viewport_height=height)
        except Exception as exc:
            raise RasterizerError(f"Failed to create an offscreen GL context: {exc}") from exc
        logger.info("Created offscreen GL context (%dx%d)", width, height)

    def render(self, description: SceneDescription) -> Image.Image:
        try:
            scene = to_pyrender_scene(description)
            self._renderer.viewport_width = description.width
            self._renderer.viewport_height = description.height
            color, _ = self._renderer.render(scene, flags=render_flags(description))
        except Exception as exc:
            raise RasterizerError(f"Render failed: {exc}") from exc
        return Image.fromarray(np.ascontiguousarray(color, dtype=np.uint8))

    def close(self) -> None:
        self._renderer.delete()
        logger.info("Released offscreen GL context")
