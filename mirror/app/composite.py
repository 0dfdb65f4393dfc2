from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from PIL import Image, ImageOps

from . import config
from .metrics import increment
from .render import Renderer

logger = logging.getLogger(__name__)

VideoFrame = Union[np.ndarray, Image.Image]


@dataclass
class Composite:
    image: Image.Image
    # False when the renderer surface was unavailable and only video was used
    has_garment: bool


def _as_image(frame: VideoFrame) -> Image.Image:
    if isinstance(frame, Image.Image):
        return frame.convert("RGB")
    return Image.fromarray(np.asarray(frame, dtype=np.uint8)).convert("RGB")


def compose_capture(
    frame: VideoFrame,
    renderer: Optional[Renderer],
    *,
    width: int = config.VIDEO_WIDTH,
    height: int = config.VIDEO_HEIGHT,
) -> Composite:
    """Mirror the camera frame and lay the renderer's last drawn output over it."""
    video = ImageOps.mirror(_as_image(frame))
    if video.size != (width, height):
        video = video.resize((width, height), Image.LANCZOS)
    out = video.convert("RGBA")

    surface = None
    if renderer is not None:
        try:
            surface = renderer.snapshot()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Renderer snapshot failed (%s); capturing video only.", exc)
    if surface is None:
        logger.warning("Renderer surface unavailable; capturing video only.")
        increment("captures_degraded", "surface_missing")
        return Composite(image=out.convert("RGB"), has_garment=False)

    layer = surface.convert("RGBA")
    if layer.size != (width, height):
        layer = layer.resize((width, height), Image.LANCZOS)
    out.alpha_composite(layer)
    return Composite(image=out.convert("RGB"), has_garment=True)
