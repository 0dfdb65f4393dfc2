from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from mirror.app import metrics
from mirror.app.composite import compose_capture
from mirror.app.engines.drape import DrapeConfig, DrapeEngine, to_renderer_order
from mirror.app.render import SoftwareMeshRenderer, draw_landmark_overlay, load_texture
from mirror.app.utils import image_to_data_uri

WIDTH, HEIGHT = 160, 90


def split_frame(width=4, height=2) -> np.ndarray:
    """Left half red, right half blue."""
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, : width // 2] = (255, 0, 0)
    frame[:, width // 2 :] = (0, 0, 255)
    return frame


class StaticRenderer:
    def __init__(self, surface=None, error=None):
        self.surface = surface
        self.error = error

    def draw(self, positions, texture):
        pass

    def snapshot(self):
        if self.error is not None:
            raise self.error
        return self.surface


def test_project_maps_world_origin_to_canvas_center():
    renderer = SoftwareMeshRenderer(WIDTH, HEIGHT)
    corners = np.array([[0.0, 0.0, 0.0], [renderer.visible_width / 2, renderer.visible_height / 2, -0.8]])
    projected = renderer.project(corners)
    assert projected[0] == pytest.approx([WIDTH / 2, HEIGHT / 2])
    assert projected[1] == pytest.approx([WIDTH, 0.0])


def test_draw_rasterizes_garment_over_torso(make_pose):
    engine = DrapeEngine(DrapeConfig(aspect_ratio=WIDTH / HEIGHT))
    positions = to_renderer_order(engine.targets(make_pose()))
    renderer = SoftwareMeshRenderer(WIDTH, HEIGHT)

    renderer.draw(positions, Image.new("RGBA", (64, 64), (230, 20, 20, 255)))
    surface = renderer.snapshot()

    assert surface.size == (WIDTH, HEIGHT)
    r, g, b, a = surface.getpixel((WIDTH // 2, HEIGHT // 2))
    assert a == 255 and r > 200
    assert surface.getpixel((0, 0))[3] == 0
    assert surface.getpixel((WIDTH - 1, HEIGHT - 1))[3] == 0


def test_hidden_mesh_draws_empty_surface(make_pose):
    engine = DrapeEngine(DrapeConfig(aspect_ratio=WIDTH / HEIGHT))
    renderer = SoftwareMeshRenderer(WIDTH, HEIGHT)
    renderer.draw(to_renderer_order(engine.targets(make_pose())), Image.new("RGBA", (8, 8), (0, 255, 0, 255)))
    renderer.draw(None, Image.new("RGBA", (8, 8), (0, 255, 0, 255)))
    assert renderer.snapshot().getbbox() is None


def test_snapshot_before_first_draw_is_none():
    assert SoftwareMeshRenderer(WIDTH, HEIGHT).snapshot() is None


def test_load_texture_accepts_image_bytes_and_data_uri():
    image = Image.new("RGB", (12, 8), (1, 2, 3))
    buf = io.BytesIO()
    image.save(buf, format="PNG")

    for source in (image, buf.getvalue(), image_to_data_uri(image)):
        texture = load_texture(source)
        assert texture.mode == "RGBA"
        assert texture.size == (12, 8)
        assert texture.getpixel((0, 0)) == (1, 2, 3, 255)


def test_load_texture_rejects_plain_string():
    with pytest.raises(ValueError):
        load_texture("not-a-data-uri")


def test_overlay_is_mirrored(make_pose):
    overlay = draw_landmark_overlay(make_pose(), WIDTH, HEIGHT)
    # left shoulder at x=0.6 is drawn at 40% of the width
    assert overlay.getpixel((int(0.4 * WIDTH), int(0.3 * HEIGHT)))[3] > 0
    assert draw_landmark_overlay(None, WIDTH, HEIGHT).getbbox() is None


def test_composite_mirrors_video_and_layers_garment():
    surface = Image.new("RGBA", (4, 2), (0, 0, 0, 0))
    surface.putpixel((3, 0), (0, 255, 0, 255))

    composite = compose_capture(split_frame(), StaticRenderer(surface), width=4, height=2)

    assert composite.has_garment is True
    assert composite.image.mode == "RGB"
    assert composite.image.getpixel((0, 1)) == (0, 0, 255)
    assert composite.image.getpixel((3, 1)) == (255, 0, 0)
    assert composite.image.getpixel((3, 0)) == (0, 255, 0)


def test_composite_resizes_to_canvas():
    composite = compose_capture(split_frame(8, 4), StaticRenderer(Image.new("RGBA", (8, 4))), width=4, height=2)
    assert composite.image.size == (4, 2)


@pytest.mark.parametrize(
    "renderer",
    [None, StaticRenderer(surface=None), StaticRenderer(error=RuntimeError("context lost"))],
)
def test_missing_surface_falls_back_to_video(renderer):
    composite = compose_capture(split_frame(), renderer, width=4, height=2)

    assert composite.has_garment is False
    assert composite.image.getpixel((0, 0)) == (0, 0, 255)
    assert metrics.counter("captures_degraded", "surface_missing") == 1
