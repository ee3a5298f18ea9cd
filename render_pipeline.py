"""Execute one render job: resolve assets, build the scene, rasterize, composite."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import httpx
import numpy as np
from PIL import Image

from asset_resolver import AssetResolver, Reference, ResolvedAsset
from compositor import decode_image, fit_to_size, multiply, texture_array
from gltf_loader import load_document, load_primitives
from render_errors import NoCamera, NoMesh, NoTextures
from render_scheduler import GpuWorker, RenderScheduler
from scene_graph import extract_all_meshes, extract_camera, extract_light
from scene_setup import SceneDescription, build_scene
from service_config import ServiceConfig

logger = logging.getLogger("preview_renderer.pipeline")


@dataclass
class RenderRequest:
    """One render job. ``width``/``height`` are the final output size."""

    model: Reference
    textures: List[Reference]
    width: int
    height: int
    mask: Optional[Image.Image] = None
    local_only: bool = False


@dataclass
class SceneOptions:
    clear_color: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    flat_shading: bool = True


@dataclass
class StageTimer:
    started: float = field(default_factory=time.perf_counter)
    last: float = field(default_factory=time.perf_counter)

    def lap(self, stage: str) -> None:
        now = time.perf_counter()
        logger.info("%s took %.3fs", stage, now - self.last)
        self.last = now

    def total(self) -> float:
        return time.perf_counter() - self.started


def decode_textures(assets: Sequence[ResolvedAsset]) -> List[np.ndarray]:
    return [texture_array(decode_image(asset.data)) for asset in assets]


def prepare_scene(
    asset: ResolvedAsset,
    textures: Sequence[np.ndarray],
    width: int,
    height: int,
    options: SceneOptions,
) -> SceneDescription:
    """Parse the model and turn its camera, meshes and light into a scene description."""
    document = load_document(asset)

    camera = extract_camera(document)
    if camera is None:
        raise NoCamera()
    meshes = extract_all_meshes(document)
    if not meshes:
        raise NoMesh()
    light = extract_light(document)

    primitives = load_primitives(document, asset, [mesh.mesh_index for mesh in meshes])
    return build_scene(
        camera,
        meshes,
        light,
        primitives,
        textures,
        width,
        height,
        clear_color=options.clear_color,
        flat_shading=options.flat_shading,
    )


def render_scene(rasterizer, description: SceneDescription) -> Image.Image:
    return rasterizer.render(description)


def finish_image(image: Image.Image, request: RenderRequest) -> Image.Image:
    """Thumbnail to the requested size, then multiply over the mask if there is one."""
    image = fit_to_size(image, request.width, request.height)
    if request.mask is not None:
        image = multiply(request.mask, image)
    return image


class RenderPipeline:
    def __init__(
        self,
        resolver: AssetResolver,
        gpu: GpuWorker,
        *,
        upscale_factor: int = 1,
        options: Optional[SceneOptions] = None,
    ):
        self.resolver = resolver
        self.gpu = gpu
        self.upscale_factor = upscale_factor
        self.options = options or SceneOptions()

    async def __call__(self, request: RenderRequest) -> Image.Image:
        if not request.textures:
            raise NoTextures()

        timer = StageTimer()
        render_width = request.width * self.upscale_factor
        render_height = request.height * self.upscale_factor

        model, *textures = await asyncio.gather(
            self.resolver.resolve(request.model, local_only=request.local_only),
            *(self.resolver.resolve(texture) for texture in request.textures),
        )
        timer.lap("asset load")

        pixels = await asyncio.to_thread(decode_textures, textures)
        timer.lap("texture decode")

        description = await asyncio.to_thread(
            prepare_scene, model, pixels, render_width, render_height, self.options
        )
        image = await self.gpu.run(render_scene, description)
        timer.lap(f"render {render_width}x{render_height} of {model.name}")

        image = await asyncio.to_thread(finish_image, image, request)
        timer.lap("post-process")
        logger.info("render of %s took %.3fs overall", model.name, timer.total())
        return image


def open_gpu_context(config: ServiceConfig):
    """Create the offscreen rasterizer; must run on the GPU worker thread."""
    os.environ["PYOPENGL_PLATFORM"] = config.gl_platform
    from rasterizer import Rasterizer

    return Rasterizer()


def build_pipeline(config: ServiceConfig, client: httpx.AsyncClient) -> RenderPipeline:
    resolver = AssetResolver(
        config.models.local_model_dir,
        client=client,
        models_base_url=config.models.models_base_url,
        s3_endpoint_url=config.models.s3_endpoint_url,
    )
    gpu = GpuWorker(lambda: open_gpu_context(config))
    return RenderPipeline(
        resolver,
        gpu,
        upscale_factor=config.upscale_factor,
        options=SceneOptions(clear_color=config.clear_color, flat_shading=config.flat_shading),
    )


def build_scheduler(config: ServiceConfig, client: httpx.AsyncClient) -> RenderScheduler:
    pipeline = build_pipeline(config, client)

    async def release_gpu() -> None:
        await asyncio.to_thread(pipeline.gpu.shutdown)

    return RenderScheduler(
        pipeline,
        queue_size=config.queue_size,
        max_in_flight=config.max_in_flight,
        timeout=config.render_timeout_seconds,
        on_stop=release_gpu,
    )
