"""
Computer-vision boundaries of the mirror.

`PoseProvider` wraps the MediaPipe PoseLandmarker and `ClothPreprocessor`
sanitizes garment uploads (PNG normalization, background removal via rembg,
crop to content). The heavy dependencies are imported lazily so the rest of
the application can run, and be tested, without the ML stack.
"""

from .pose import PoseProvider, PoseProviderConfig
from .preprocess import ClothPreprocessor, PreparedGarment, crop_to_content

__all__ = [
    "ClothPreprocessor",
    "PoseProvider",
    "PoseProviderConfig",
    "PreparedGarment",
    "crop_to_content",
]
