# renderflow/capabilities.py
"""Hardware / ffmpeg capability detection.

Results of the CLI probes are memoized for ``CAPABILITY_CACHE_TTL`` seconds so
the decision layer can ask on every request without shelling out each time.
"""
from __future__ import annotations

import os
import re
import shlex
import shutil
import subprocess
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from . import config
from .log import setup_logger

logger = setup_logger(__name__)

CPU_ENCODER = "libx264"
HW_ENCODERS = {
    "h264_nvenc": "nvidia",
    "h264_vaapi": "vaapi",
    "h264_qsv": "intel-qsv",
}
# FFMPEG_HW_ACCEL value -> encoders it may pick, in preference order
HW_ACCEL_CANDIDATES = {
    "auto": ["h264_nvenc", "h264_vaapi", "h264_qsv"],
    "cuda": ["h264_nvenc"],
    "nvenc": ["h264_nvenc"],
    "vaapi": ["h264_vaapi"],
    "qsv": ["h264_qsv"],
    "off": [],
}


@dataclass
class GpuDevice:
    name: str
    memory: str = ""
    driver: str = ""


@dataclass
class GpuInfo:
    available: bool = False
    count: int = 0
    vendor: Optional[str] = None
    devices: List[GpuDevice] = field(default_factory=list)


@dataclass
class Capabilities:
    ffmpeg_available: bool = False
    ffmpeg_version: str = "unknown"
    ffmpeg_path: Optional[str] = None
    encoders: List[str] = field(default_factory=list)
    best_encoder: str = CPU_ENCODER
    gpu_acceleration: str = "none"
    gpu: GpuInfo = field(default_factory=GpuInfo)
    cpu_cores: int = 1
    detected_at: float = 0.0

    @property
    def hardware_encoding(self) -> bool:
        return self.best_encoder in HW_ENCODERS

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["hardware_encoding"] = self.hardware_encoding
        return data


_CACHE: Dict[str, object] = {"caps": None, "at": 0.0}


# ------------ Helpers ------------
def _run(cmd: str, timeout: float = 10.0) -> subprocess.CompletedProcess:
    return subprocess.run(
        shlex.split(cmd),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=False,
        timeout=timeout,
    )


def parse_ffmpeg_version(output: str) -> str:
    m = re.search(r"ffmpeg version (\S+)", output or "")
    return m.group(1) if m else "unknown"


def parse_encoders(output: str) -> List[str]:
    """Names of the H.264 encoders listed by ``ffmpeg -encoders``."""
    found = []
    for line in (output or "").splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] in (CPU_ENCODER, *HW_ENCODERS):
            found.append(parts[1])
    return found


def pick_best_encoder(encoders: List[str], hw_accel: str) -> str:
    for name in HW_ACCEL_CANDIDATES.get(hw_accel, HW_ACCEL_CANDIDATES["auto"]):
        if name in encoders:
            return name
    return CPU_ENCODER


def parse_nvidia_smi(output: str) -> List[GpuDevice]:
    devices = []
    for line in (output or "").strip().splitlines():
        cols = [c.strip() for c in line.split(",")]
        if len(cols) < 3 or not cols[0]:
            continue
        devices.append(GpuDevice(name=cols[0], memory=cols[1], driver=cols[2]))
    return devices


def detect_gpu() -> GpuInfo:
    try:
        res = _run(
            f"{config.NVIDIA_SMI_BIN} --query-gpu=name,memory.total,driver_version --format=csv,noheader"
        )
    except (OSError, subprocess.SubprocessError):
        return GpuInfo()
    if res.returncode != 0:
        return GpuInfo()
    devices = parse_nvidia_smi(res.stdout)
    if not devices:
        return GpuInfo()
    return GpuInfo(available=True, count=len(devices), vendor="nvidia", devices=devices)


def _detect() -> Capabilities:
    caps = Capabilities(cpu_cores=os.cpu_count() or 1, detected_at=time.time())
    try:
        res = _run(f"{config.FFMPEG_BIN} -version")
    except (OSError, subprocess.SubprocessError) as e:
        logger.error("ffmpeg not found: %s", e)
        return caps
    if res.returncode != 0:
        logger.error("ffmpeg -version exited with %s", res.returncode)
        return caps

    caps.ffmpeg_available = True
    caps.ffmpeg_version = parse_ffmpeg_version(res.stdout)
    caps.ffmpeg_path = shutil.which(config.FFMPEG_BIN) or config.FFMPEG_BIN

    hw_accel = config.FFMPEG_HW_ACCEL if config.ENABLE_GPU else "off"
    try:
        enc = _run(f"{config.FFMPEG_BIN} -hide_banner -encoders")
        caps.encoders = parse_encoders(enc.stdout)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Failed to list encoders, defaulting to %s: %s", CPU_ENCODER, e)
        caps.encoders = [CPU_ENCODER]

    caps.best_encoder = pick_best_encoder(caps.encoders, hw_accel)
    caps.gpu_acceleration = HW_ENCODERS.get(caps.best_encoder, "none")
    caps.gpu = detect_gpu()
    logger.info(
        "ffmpeg %s detected; best encoder %s (gpu=%s)",
        caps.ffmpeg_version,
        caps.best_encoder,
        caps.gpu.count,
    )
    return caps


def detect_capabilities(force: bool = False) -> Capabilities:
    now = time.time()
    cached = _CACHE["caps"]
    if not force and cached is not None and now - float(_CACHE["at"]) < config.CAPABILITY_CACHE_TTL:
        return cached  # type: ignore[return-value]
    caps = _detect()
    _CACHE["caps"] = caps
    _CACHE["at"] = now
    return caps


def invalidate_capabilities_cache() -> None:
    _CACHE["caps"] = None
    _CACHE["at"] = 0.0


def encoder_fallback_chain(caps: Capabilities) -> List[str]:
    """Encoders to try in order: the detected best, then the CPU encoder."""
    chain = [caps.best_encoder] if caps.best_encoder else []
    if CPU_ENCODER not in chain:
        chain.append(CPU_ENCODER)
    return chain


# ------------ Storage ------------
def format_bytes(n: int) -> str:
    if n <= 0:
        return "0 B"
    sizes = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    value = float(n)
    while value >= 1024 and i < len(sizes) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {sizes[i]}"


def storage_info(path: Path) -> Dict:
    try:
        usage = shutil.disk_usage(str(path))
    except OSError as e:
        return {"available": False, "error": "Unable to detect storage", "details": str(e)}
    percent = round(usage.used / usage.total * 100) if usage.total else 0
    return {
        "available": True,
        "path": str(path),
        "total": format_bytes(usage.total),
        "used": format_bytes(usage.used),
        "free": format_bytes(usage.free),
        "usage_percent": percent,
        "total_bytes": usage.total,
        "used_bytes": usage.used,
        "available_bytes": usage.free,
    }
