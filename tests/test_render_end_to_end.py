"""Renders through a real offscreen GL context; skipped where none can be created."""

import asyncio
import os

import httpx
import pytest

from asset_resolver import AssetResolver
from render_pipeline import RenderPipeline, RenderRequest, open_gpu_context
from render_scheduler import GpuWorker
from service_config import ServiceConfig


@pytest.fixture
def gpu():
    config = ServiceConfig(gl_platform=os.environ.get("PYOPENGL_PLATFORM", "egl"))
    worker = GpuWorker(lambda: open_gpu_context(config))
    try:
        worker.call(lambda context: None)
    except Exception as exc:
        worker.shutdown()
        pytest.skip(f"no offscreen GL context available: {exc}")
    yield worker
    worker.shutdown()


def test_textured_quad_fills_the_centre(gpu, tmp_path, scene_glb, red_png):
    async def run():
        async with httpx.AsyncClient() as client:
            pipeline = RenderPipeline(AssetResolver(str(tmp_path), client=client), gpu)
            return await pipeline(RenderRequest(model=scene_glb, textures=[red_png], width=100, height=100))

    image = asyncio.run(run())

    assert image.size == (100, 100)
    red, green, blue, alpha = image.getpixel((50, 50))
    assert red >= 250 and green <= 5 and blue <= 5 and alpha >= 250
    for corner in ((0, 0), (99, 0), (0, 99), (99, 99)):
        assert image.getpixel(corner) == (0, 0, 0, 0)
