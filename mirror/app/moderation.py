from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import List

from PIL import Image

from . import config

logger = logging.getLogger(__name__)


@dataclass
class GarmentUploadIssue:
    code: str
    message: str


def evaluate_garment_upload(garment_bytes: bytes) -> List[GarmentUploadIssue]:
    """Reject uploads that cannot be drawn as a garment texture at all."""
    issues: List[GarmentUploadIssue] = []
    if len(garment_bytes) > config.MAX_GARMENT_BYTES:
        issues.append(
            GarmentUploadIssue(
                code="too_large",
                message=f"Upload an image under {config.MAX_GARMENT_BYTES // (1024 * 1024)} MB.",
            )
        )
        return issues
    try:
        with Image.open(io.BytesIO(garment_bytes)) as image:
            width, height = image.size
        if min(width, height) < config.MIN_GARMENT_SIDE_PX:
            issues.append(
                GarmentUploadIssue(
                    code="low_resolution",
                    message=f"Upload a larger image (min {config.MIN_GARMENT_SIDE_PX}px per side).",
                )
            )
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("Failed to parse garment upload: %s", exc)
        issues.append(GarmentUploadIssue(code="invalid_image", message="Could not read the uploaded garment image."))
    return issues
