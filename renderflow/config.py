# renderflow/config.py
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except ValueError:
        return float(default)


# ------------ Config / Env ------------
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Paths
APP_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(APP_DIR / ".." / "data")))
UPLOAD_DIR = DATA_DIR / "uploads"
OUTPUT_DIR = DATA_DIR / "outputs"
TEMP_DIR = DATA_DIR / "temp"
for p in (DATA_DIR, UPLOAD_DIR, OUTPUT_DIR, TEMP_DIR):
    p.mkdir(parents=True, exist_ok=True)

# Binaries; plain names resolve through PATH
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")
NVIDIA_SMI_BIN = os.getenv("NVIDIA_SMI_BIN", "nvidia-smi")

# auto, cuda, vaapi, qsv, off
FFMPEG_HW_ACCEL = (os.getenv("FFMPEG_HW_ACCEL", "auto") or "auto").strip().lower()
ENABLE_GPU = _env_flag("ENABLE_GPU", "1")
VAAPI_DEVICE = os.getenv("VAAPI_DEVICE", "/dev/dri/renderD128")

CAPABILITY_CACHE_TTL = _env_float("CAPABILITY_CACHE_TTL", 60.0)

# ------------ Limits ------------
MAX_RENDER_TIME = _env_float("MAX_RENDER_TIME", 600.0)  # seconds per ffmpeg run
MAX_UPLOAD_MB = _env_float("MAX_UPLOAD_MB", 200.0)
MAX_QUEUE_DEPTH = int(_env_float("MAX_QUEUE_DEPTH", 100))
DOWNLOAD_TTL_MIN = _env_float("DOWNLOAD_TTL_MIN", 120.0)
UPLOAD_TTL_MIN = _env_float("UPLOAD_TTL_MIN", 240.0)  # unused uploads expire after this
DOWNLOAD_TIMEOUT = _env_float("DOWNLOAD_TIMEOUT", 60.0)

ALLOWED_MIME_TYPES = (
    "video/mp4",
    "video/webm",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "image/jpeg",
    "image/png",
    "image/webp",
)
