import pytest
from PIL import Image

from asset_resolver import ResolvedAsset
from scene_builders import image_bytes, simple_scene_glb


class FakeRasterizer:
    """Stands in for the GL context: returns a solid image at the requested size."""

    def __init__(self, color=(255, 0, 0, 255)):
        self.color = color
        self.descriptions = []
        self.closed = False

    def render(self, description):
        self.descriptions.append(description)
        return Image.new("RGBA", (description.width, description.height), self.color)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_rasterizer():
    return FakeRasterizer()


@pytest.fixture
def scene_glb():
    return simple_scene_glb()


@pytest.fixture
def scene_asset(scene_glb):
    return ResolvedAsset(None, scene_glb)


@pytest.fixture
def red_png():
    return image_bytes((255, 0, 0, 255))
