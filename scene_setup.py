"""Turn extracted camera, mesh and light nodes into a renderer-independent scene description."""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from gltf_loader import Primitive
from render_errors import NoMesh, NoTextures
from scene_graph import CameraNode, Directional, LightNode, MeshNode, Point, Spot
from transform import ROTATION_EPSILON, Transform

logger = logging.getLogger("preview_renderer.scene_setup")

CLIP_FACTOR = 100.0
ROLL_TRIGGER_X = 1.0 / math.sqrt(2.0)
WORLD_UP = np.array([0.0, 1.0, 0.0])
FALLBACK_UP = np.array([0.0, 0.0, 1.0])


@dataclass
class CameraSetup:
    pose: np.ndarray
    yfov: float
    znear: float
    zfar: float
    aspect_ratio: float
    rolled: bool = False


@dataclass
class MeshDraw:
    primitive: Primitive
    pose: np.ndarray
    texture_index: int


@dataclass
class PointLightSetup:
    position: np.ndarray
    color: Tuple[float, float, float]
    intensity: float


@dataclass
class SceneDescription:
    camera: CameraSetup
    draws: List[MeshDraw]
    textures: List[np.ndarray]
    width: int
    height: int
    light: Optional[PointLightSetup] = None
    clear_color: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    flat_shading: bool = True


def corrected_yfov(camera: CameraNode, width: int, height: int) -> float:
    """Scale the authored vertical FOV for the requested output aspect ratio."""
    return camera.yfov * (camera.aspect_ratio / (width / height))


def clip_planes(camera: CameraNode) -> Tuple[float, float]:
    return camera.znear / CLIP_FACTOR, camera.zfar * CLIP_FACTOR


def needs_roll(camera: CameraNode) -> bool:
    """Detect the upstream authoring convention that requires a 90 degree roll.

    The trigger is a parent rotation whose quaternion x component is 1/sqrt(2) in
    magnitude while the camera's own rotation is identity. Kept as a literal
    special case; it is not a general rule.
    """
    parent_x = camera.parent_transform.rotation()[0]
    return abs(abs(parent_x) - ROLL_TRIGGER_X) < ROTATION_EPSILON and camera.local_transform.has_equal_rotation(
        Transform.identity()
    )


def look_at(eye: np.ndarray, target: np.ndarray, up: np.ndarray = WORLD_UP) -> np.ndarray:
    """Camera-to-world pose looking from ``eye`` at ``target`` along -Z."""
    forward = target - eye
    forward = forward / np.linalg.norm(forward)
    right = np.cross(forward, up)
    if np.linalg.norm(right) < 1e-9:
        right = np.cross(forward, FALLBACK_UP)
    right = right / np.linalg.norm(right)
    true_up = np.cross(right, forward)

    pose = np.eye(4, dtype=np.float64)
    pose[:3, 0] = right
    pose[:3, 1] = true_up
    pose[:3, 2] = -forward
    pose[:3, 3] = eye
    return pose


def roll(pose: np.ndarray, degrees: float) -> np.ndarray:
    """Rotate a camera pose about its own view axis."""
    return pose @ Transform.from_axis_angle((0.0, 0.0, 1.0), math.radians(degrees)).matrix


def camera_setup(camera: CameraNode, width: int, height: int) -> CameraSetup:
    """Place the camera at its world position, looking at its parent's origin."""
    eye = camera.world_transform.position()
    target = camera.parent_transform.position()

    if np.linalg.norm(target - eye) < 1e-9:
        # Parent and camera share an origin; fall back to the camera's own orientation.
        translation, rotation, _ = camera.world_transform.decomposed()
        pose = Transform.from_trs(translation, rotation).matrix
    else:
        pose = look_at(eye, target)

    rolled = needs_roll(camera)
    if rolled:
        pose = roll(pose, 90.0)

    znear, zfar = clip_planes(camera)
    return CameraSetup(
        pose=pose,
        yfov=corrected_yfov(camera, width, height),
        znear=znear,
        zfar=zfar,
        aspect_ratio=width / height,
        rolled=rolled,
    )


def texture_indices(primitive_count: int, texture_count: int) -> List[int]:
    """Bind textures round-robin when there are fewer textures than primitives."""
    if texture_count == 0:
        raise NoTextures()
    return [position % texture_count for position in range(primitive_count)]


def light_setup(light: Optional[LightNode]) -> Optional[PointLightSetup]:
    if light is None:
        return None
    if isinstance(light.kind, Point):
        return PointLightSetup(
            position=light.world_transform.position(),
            color=tuple(channel / 255.0 for channel in light.color),
            intensity=light.intensity,
        )
    if isinstance(light.kind, (Directional, Spot)):
        logger.debug("Omitting %s light from the render", type(light.kind).__name__)
        return None
    raise TypeError(f"Unknown light kind {light.kind!r}")


def build_scene(
    camera: CameraNode,
    meshes: Sequence[MeshNode],
    light: Optional[LightNode],
    primitives: Sequence[Primitive],
    textures: Sequence[np.ndarray],
    width: int,
    height: int,
    *,
    clear_color: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0),
    flat_shading: bool = True,
) -> SceneDescription:
    if not meshes or not primitives:
        raise NoMesh()

    bindings = texture_indices(len(primitives), len(textures))
    draws = []
    for primitive, texture_index in zip(primitives, bindings):
        mesh_node = meshes[primitive.mesh_node_index]
        draws.append(MeshDraw(primitive=primitive, pose=mesh_node.world_transform.matrix, texture_index=texture_index))

    return SceneDescription(
        camera=camera_setup(camera, width, height),
        draws=draws,
        textures=list(textures),
        width=width,
        height=height,
        light=light_setup(light),
        clear_color=clear_color,
        flat_shading=flat_shading,
    )
