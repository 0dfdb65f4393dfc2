from __future__ import annotations

import io
import logging
from typing import Optional, Protocol, Sequence, Tuple, Union

import numpy as np
from PIL import Image, ImageChops, ImageDraw

from . import config
from .engines.drape import GRID_COLS, GRID_ROWS, VISIBLE_HEIGHT
from .landmarks import PoseFrame
from .utils import parse_data_uri

logger = logging.getLogger(__name__)

TextureSource = Union[Image.Image, str, bytes]

# Torso and limb connections drawn by the debug overlay (MediaPipe indices).
OVERLAY_CONNECTIONS: Sequence[Tuple[int, int]] = (
    (11, 12), (11, 13), (13, 15), (12, 14), (14, 16),
    (11, 23), (12, 24), (23, 24), (23, 25), (25, 27), (24, 26), (26, 28),
)


class Renderer(Protocol):
    def draw(self, positions: Optional[np.ndarray], texture: Optional[Image.Image]) -> None: ...

    def snapshot(self) -> Optional[Image.Image]: ...


def load_texture(source: TextureSource) -> Image.Image:
    if isinstance(source, Image.Image):
        return source.convert("RGBA")
    payload = parse_data_uri(source)[1] if isinstance(source, str) else source
    with Image.open(io.BytesIO(payload)) as image:
        image.load()
        return image.convert("RGBA")


def _perspective_coefficients(
    dst: Sequence[Tuple[float, float]],
    src: Sequence[Tuple[float, float]],
) -> Tuple[float, ...]:
    """Coefficients for Image.PERSPECTIVE mapping output points `dst` onto input points `src`."""
    rows = []
    rhs = []
    for (x, y), (sx, sy) in zip(dst, src):
        rows.append([x, y, 1.0, 0.0, 0.0, 0.0, -sx * x, -sx * y])
        rows.append([0.0, 0.0, 0.0, x, y, 1.0, -sy * x, -sy * y])
        rhs.extend([sx, sy])
    solution = np.linalg.solve(np.asarray(rows, dtype=np.float64), np.asarray(rhs, dtype=np.float64))
    return tuple(float(value) for value in solution)


class SoftwareMeshRenderer:
    """Pillow rasterizer for the 10x10 garment mesh.

    Expects positions in renderer vertex order (row-major, column 0 at the
    visual left edge). Depth is dropped when projecting, so the parabolic wrap
    only matters to 3D renderers. The last drawn frame is kept for capture.
    """

    def __init__(
        self,
        width: int = config.VIDEO_WIDTH,
        height: int = config.VIDEO_HEIGHT,
        visible_height: float = VISIBLE_HEIGHT,
    ) -> None:
        self.width = width
        self.height = height
        self.visible_height = visible_height
        self.visible_width = visible_height * (width / height)
        self._frame: Optional[Image.Image] = None

    def project(self, positions: np.ndarray) -> np.ndarray:
        """World units to canvas pixels, shape (GRID_POINTS, 2)."""
        points = np.asarray(positions, dtype=np.float64)
        px = (points[:, 0] / self.visible_width + 0.5) * self.width
        py = (0.5 - points[:, 1] / self.visible_height) * self.height
        return np.stack([px, py], axis=1)

    def draw(self, positions: Optional[np.ndarray], texture: Optional[Image.Image]) -> None:
        canvas = Image.new("RGBA", (self.width, self.height), (0, 0, 0, 0))
        if positions is not None and texture is not None:
            self._draw_mesh(canvas, self.project(positions).reshape(GRID_ROWS, GRID_COLS, 2), texture)
        self._frame = canvas

    def snapshot(self) -> Optional[Image.Image]:
        if self._frame is None:
            return None
        return self._frame.copy()

    def _draw_mesh(self, canvas: Image.Image, grid: np.ndarray, texture: Image.Image) -> None:
        tex_w, tex_h = texture.size
        step_x = tex_w / (GRID_COLS - 1)
        step_y = tex_h / (GRID_ROWS - 1)
        for row in range(GRID_ROWS - 1):
            for col in range(GRID_COLS - 1):
                quad = [grid[row, col], grid[row, col + 1], grid[row + 1, col + 1], grid[row + 1, col]]
                src = [
                    (col * step_x, row * step_y),
                    ((col + 1) * step_x, row * step_y),
                    ((col + 1) * step_x, (row + 1) * step_y),
                    (col * step_x, (row + 1) * step_y),
                ]
                self._draw_quad(canvas, quad, src, texture)

    def _draw_quad(self, canvas: Image.Image, quad, src, texture: Image.Image) -> None:
        xs = [float(p[0]) for p in quad]
        ys = [float(p[1]) for p in quad]
        x0 = max(0, int(np.floor(min(xs))))
        y0 = max(0, int(np.floor(min(ys))))
        x1 = min(self.width, int(np.ceil(max(xs))) + 1)
        y1 = min(self.height, int(np.ceil(max(ys))) + 1)
        if x1 <= x0 or y1 <= y0:
            return
        local = [(x - x0, y - y0) for x, y in zip(xs, ys)]
        try:
            coeffs = _perspective_coefficients(local, src)
        except np.linalg.LinAlgError:
            return
        patch = texture.transform((x1 - x0, y1 - y0), Image.PERSPECTIVE, coeffs, Image.BILINEAR)
        mask = Image.new("L", patch.size, 0)
        ImageDraw.Draw(mask).polygon(local, fill=255, outline=255)
        patch.putalpha(ImageChops.multiply(patch.getchannel("A"), mask))
        canvas.alpha_composite(patch, dest=(x0, y0))


def draw_landmark_overlay(pose: Optional[PoseFrame], width: int, height: int) -> Image.Image:
    """White landmark skeleton in mirrored screen space, as shown over the live feed."""
    overlay = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    if pose is None:
        return overlay
    draw = ImageDraw.Draw(overlay)

    def to_px(index: int) -> Optional[Tuple[float, float]]:
        lm = pose.get(index)
        if lm is None:
            return None
        return (1.0 - lm.x) * width, lm.y * height

    for start, end in OVERLAY_CONNECTIONS:
        a, b = to_px(start), to_px(end)
        if a is not None and b is not None:
            draw.line([a, b], fill=(255, 255, 255, 128), width=4)
    for index in range(len(pose)):
        point = to_px(index)
        if point is not None:
            x, y = point
            draw.ellipse([x - 4, y - 4, x + 4, y + 4], fill=(255, 255, 255, 204))
    return overlay
