# renderflow/ffmpeg_errors.py
from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Dict, Optional


@dataclass
class FFmpegErrorInfo:
    category: str
    code: str
    message: str
    details: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class RenderError(RuntimeError):
    """A render attempt failed; ``code`` is one of the parser's codes or a worker code."""

    def __init__(self, code: str, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    @classmethod
    def from_stderr(cls, stderr: str, returncode: Optional[int] = None) -> "RenderError":
        info = parse_ffmpeg_error(stderr)
        message = info.message
        if info.details:
            message = f"{message}: {info.details}"
        elif returncode is not None:
            message = f"{message} (exit code {returncode})"
        return cls(info.code, message, info.details)

    def to_dict(self) -> Dict:
        return {"code": self.code, "message": self.message, "details": self.details}


def _last_error_line(stderr: str) -> str:
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    for line in reversed(lines):
        low = line.lower()
        if "error" in low or "failed" in low or "invalid" in low:
            return line
    return lines[-1] if lines else "Unknown FFmpeg error"


def parse_ffmpeg_error(stderr: Optional[str]) -> FFmpegErrorInfo:
    if not stderr or not stderr.strip():
        return FFmpegErrorInfo("FFMPEG_ERROR", "FFMPEG_NO_OUTPUT", "FFmpeg failed with no output")

    low = stderr.lower()

    if "unknown codec" in low or "codec not found" in low or "unknown encoder" in low:
        m = re.search(r"(?:codec|encoder)[:\s]+['\"]?([a-z0-9_]+)", stderr, re.IGNORECASE)
        return FFmpegErrorInfo(
            "FFMPEG_ERROR",
            "FFMPEG_INVALID_CODEC",
            "Requested codec not supported",
            f"Codec: {m.group(1)}" if m else None,
        )

    if "encoding failed" in low or ("encoder" in low and "error" in low):
        return FFmpegErrorInfo(
            "FFMPEG_ERROR", "FFMPEG_ENCODING_FAILED", "Video encoding failed", _last_error_line(stderr)
        )

    if "invalid data" in low or "invalid file" in low or "moov atom not found" in low:
        return FFmpegErrorInfo(
            "INPUT_ERROR",
            "INPUT_FILE_CORRUPTED",
            "Source file is corrupted or invalid",
            _last_error_line(stderr),
        )

    if "could not write header" in low or "incompatible" in low:
        return FFmpegErrorInfo(
            "FFMPEG_ERROR",
            "FFMPEG_INCOMPATIBLE_FORMATS",
            "Input formats are incompatible",
            _last_error_line(stderr),
        )

    if "pts" in low and ("dts" in low or "timestamp" in low):
        return FFmpegErrorInfo(
            "FFMPEG_ERROR",
            "FFMPEG_AUDIO_SYNC_ERROR",
            "Audio/video synchronization failed",
            "Timestamp mismatch detected",
        )

    if "permission denied" in low or "access denied" in low:
        return FFmpegErrorInfo(
            "STORAGE_ERROR",
            "STORAGE_WRITE_FAILED",
            "Permission denied writing output file",
            _last_error_line(stderr),
        )

    if "no space" in low or "disk full" in low:
        return FFmpegErrorInfo("STORAGE_ERROR", "STORAGE_DISK_FULL", "Server disk space full")

    if "out of memory" in low or "cannot allocate" in low:
        return FFmpegErrorInfo(
            "RESOURCE_ERROR",
            "RESOURCE_OUT_OF_MEMORY",
            "Insufficient memory to process video",
            _last_error_line(stderr),
        )

    return FFmpegErrorInfo(
        "FFMPEG_ERROR", "FFMPEG_ERROR_UNKNOWN", "FFmpeg processing failed", _last_error_line(stderr)
    )
