from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from PIL import Image

from .. import config
from ..cache import PreparedGarmentCache
from ..metrics import increment
from ..utils import image_to_data_uri, sniff_mime, stable_content_hash, to_data_uri

logger = logging.getLogger(__name__)

BackgroundRemover = Callable[[Image.Image], Image.Image]


def _rembg_remove(image: Image.Image) -> Image.Image:
    from rembg import remove  # type: ignore

    return remove(image)


@dataclass
class PreparedGarment:
    data_uri: str
    cache_key: str
    degraded: bool = False
    cached: bool = False


def to_rgba_png(raw: bytes) -> Image.Image:
    """Decode any Pillow-readable upload and normalize it to an RGBA raster."""
    with Image.open(io.BytesIO(raw)) as image:
        image.load()
        return image.convert("RGBA")


def crop_to_content(
    image: Image.Image,
    *,
    padding: int = config.CROP_PADDING_PX,
    alpha_threshold: int = config.ALPHA_THRESHOLD,
) -> Image.Image:
    """Crop to pixels whose alpha exceeds the threshold, keeping a padding margin.

    Images with no such pixel are returned unchanged.
    """
    rgba = image if image.mode == "RGBA" else image.convert("RGBA")
    alpha = np.asarray(rgba.getchannel("A"))
    rows = np.flatnonzero((alpha > alpha_threshold).any(axis=1))
    cols = np.flatnonzero((alpha > alpha_threshold).any(axis=0))
    if rows.size == 0 or cols.size == 0:
        return rgba
    width, height = rgba.size
    left = max(0, int(cols[0]) - padding)
    top = max(0, int(rows[0]) - padding)
    right = min(width, int(cols[-1]) + 1 + padding)
    bottom = min(height, int(rows[-1]) + 1 + padding)
    return rgba.crop((left, top, right, bottom))


class ClothPreprocessor:
    """Sanitizes, background-removes and crops garment uploads.

    Any failure degrades to the unprocessed upload so the flow never blocks.
    """

    def __init__(
        self,
        *,
        remover: Optional[BackgroundRemover] = None,
        cache: Optional[PreparedGarmentCache] = None,
        padding: int = config.CROP_PADDING_PX,
        alpha_threshold: int = config.ALPHA_THRESHOLD,
    ) -> None:
        self.remover = remover or _rembg_remove
        self.cache = cache
        self.padding = padding
        self.alpha_threshold = alpha_threshold

    def prepare(self, raw: bytes) -> str:
        return self.prepare_garment(raw).data_uri

    def prepare_garment(self, raw: bytes) -> PreparedGarment:
        cache_key = stable_content_hash([raw], prefix=f"garment:pad={self.padding}:alpha={self.alpha_threshold}:")
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("Prepared garment cache hit %s", cache_key[:12])
                return PreparedGarment(data_uri=cached, cache_key=cache_key, cached=True)

        try:
            prepared = self._process(raw)
            result = PreparedGarment(data_uri=image_to_data_uri(prepared), cache_key=cache_key)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Garment preprocessing failed (%s); using the original upload.", exc)
            increment("preprocess_failures", type(exc).__name__)
            result = PreparedGarment(
                data_uri=to_data_uri(raw, sniff_mime(raw)),
                cache_key=cache_key,
                degraded=True,
            )

        if self.cache is not None:
            self.cache.put(cache_key, result.data_uri, degraded=result.degraded)
        return result

    def _process(self, raw: bytes) -> Image.Image:
        image = to_rgba_png(raw)
        removed = self.remover(image)
        if removed.mode != "RGBA":
            removed = removed.convert("RGBA")
        return crop_to_content(removed, padding=self.padding, alpha_threshold=self.alpha_threshold)
