import importlib
import os

import pytest

from render_errors import RasterizerError


@pytest.fixture
def rasterizer_module():
    os.environ.setdefault("PYOPENGL_PLATFORM", "egl")
    try:
        return importlib.import_module("rasterizer")
    except Exception as exc:
        pytest.skip(f"pyrender cannot be imported here: {exc}")


class _Renderer:
    viewport_width = 0
    viewport_height = 0

    def render(self, scene, flags):
        raise AssertionError("render should not be reached")


def test_scene_conversion_failure_is_a_rasterizer_error(rasterizer_module, monkeypatch):
    def broken_scene(description):
        raise ValueError("degenerate primitive")

    monkeypatch.setattr(rasterizer_module, "to_pyrender_scene", broken_scene)
    rasterizer = rasterizer_module.Rasterizer.__new__(rasterizer_module.Rasterizer)
    rasterizer._renderer = _Renderer()

    with pytest.raises(RasterizerError) as excinfo:
        rasterizer.render(object())

    assert "degenerate primitive" in str(excinfo.value)
    assert excinfo.value.status_code == 500
