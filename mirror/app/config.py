import os
from pathlib import Path

# Base path for the mirror package
BASE_PATH = Path(__file__).resolve().parent

# Camera feed geometry. The drape engine derives its aspect ratio from these.
VIDEO_WIDTH = int(os.environ.get("MIRROR_VIDEO_WIDTH", "1280"))
VIDEO_HEIGHT = int(os.environ.get("MIRROR_VIDEO_HEIGHT", "720"))

MODELS_BASE_DIR = Path(os.environ.get("MIRROR_MODELS_DIR", "/models"))
POSE_MODEL_PATH = Path(
    os.environ.get(
        "MIRROR_POSE_MODEL_PATH",
        MODELS_BASE_DIR / "pose_landmarker" / "pose_landmarker_full.task",
    )
)
POSE_DETECTION_CONFIDENCE = float(os.environ.get("MIRROR_POSE_DETECTION_CONFIDENCE", "0.6"))
POSE_PRESENCE_CONFIDENCE = float(os.environ.get("MIRROR_POSE_PRESENCE_CONFIDENCE", "0.6"))
POSE_TRACKING_CONFIDENCE = float(os.environ.get("MIRROR_POSE_TRACKING_CONFIDENCE", "0.6"))
POSE_USE_GPU = os.environ.get("MIRROR_POSE_USE_GPU", "0") == "1"

# Capture timing
COUNTDOWN_START = int(os.environ.get("MIRROR_COUNTDOWN_START", "3"))
COUNTDOWN_INTERVAL_SECONDS = float(os.environ.get("MIRROR_COUNTDOWN_INTERVAL", "1.0"))
CAPTURE_SETTLE_SECONDS = float(os.environ.get("MIRROR_CAPTURE_SETTLE", "0.1"))

# Garment preparation
CROP_PADDING_PX = int(os.environ.get("MIRROR_CROP_PADDING_PX", "20"))
ALPHA_THRESHOLD = int(os.environ.get("MIRROR_ALPHA_THRESHOLD", "10"))
MIN_GARMENT_SIDE_PX = int(os.environ.get("MIRROR_MIN_GARMENT_SIDE", "64"))
MAX_GARMENT_BYTES = int(os.environ.get("MIRROR_MAX_GARMENT_BYTES", str(15 * 1024 * 1024)))

# Fit analysis (OpenAI-compatible chat completions endpoint)
ANALYSIS_BASE_URL = os.environ.get("MIRROR_ANALYSIS_BASE_URL", "https://openrouter.ai/api/v1")
ANALYSIS_MODEL = os.environ.get("MIRROR_ANALYSIS_MODEL", "google/gemma-3-27b-it:free")
ANALYSIS_API_KEY = os.environ.get("MIRROR_ANALYSIS_API_KEY", "")
ANALYSIS_TIMEOUT_SECONDS = float(os.environ.get("MIRROR_ANALYSIS_TIMEOUT", "60"))

_DEFAULT_CORS_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://127.0.0.1",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_cors_env = os.environ.get("MIRROR_CORS_ORIGINS")
if _cors_env:
    CORS_ALLOW_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip()]
else:
    CORS_ALLOW_ORIGINS = _DEFAULT_CORS_ORIGINS

CORS_ALLOW_ORIGIN_REGEX = os.environ.get(
    "MIRROR_CORS_ORIGIN_REGEX", r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
)

# Directory where captured composites are written.
OUTPUTS_DIR = Path(
    os.environ.get("MIRROR_OUTPUTS_DIR", BASE_PATH.parent / "outputs")
)
OUTPUTS_DIR.mkdir(exist_ok=True, parents=True)

# Prepared garment cache (background-removed, cropped data URIs)
CACHE_DIR = Path(os.environ.get("MIRROR_CACHE_DIR", BASE_PATH.parent / "cache"))
CACHE_DIR.mkdir(exist_ok=True, parents=True)
