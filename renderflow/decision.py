# renderflow/decision.py
"""Execution decisions: user intent + detected hardware + queue load -> encoder settings.

The decision layer never raises. Anything unexpected is logged and replaced by
``default_decision()`` so a render can always be planned.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .capabilities import CPU_ENCODER, Capabilities
from .log import setup_logger

logger = setup_logger(__name__)

GOALS = ("conversion", "awareness", "engagement", "quality", "draft")
PRIORITIES = ("low", "normal", "high")
TOOLS = ("replicator", "scene-builder", "ai-tools", "batch", "preview")

DEFAULT_GOAL = "conversion"
DEFAULT_PLATFORM = "tiktok"
DEFAULT_PRIORITY = "normal"
DEFAULT_TOOL = "replicator"

MIN_DURATION_SEC = 5.0
DEFAULT_FPS = 30
AUDIO_BITRATE = 128_000
BITS_PER_PIXEL = 0.08

# platform -> (aspect ratio, max duration seconds)
PLATFORMS: Dict[str, Tuple[str, float]] = {
    "tiktok": ("9:16", 35.0),
    "instagram-reels": ("9:16", 35.0),
    "youtube-shorts": ("9:16", 35.0),
    "snapchat": ("9:16", 35.0),
    "facebook": ("4:5", 35.0),
    "meta": ("4:5", 35.0),
    "instagram-feed": ("1:1", 35.0),
    "youtube": ("16:9", 60.0),
}
RESOLUTIONS = {
    "9:16": (1080, 1920),
    "4:5": (1080, 1350),
    "1:1": (1080, 1080),
    "16:9": (1920, 1080),
}
DEGRADED_RESOLUTIONS = {
    "9:16": (720, 1280),
    "4:5": (720, 900),
    "1:1": (720, 720),
    "16:9": (1280, 720),
}

# Presets ordered fastest -> slowest
PRESETS: Dict[str, List[str]] = {
    "libx264": ["ultrafast", "superfast", "veryfast", "faster", "fast", "medium", "slow"],
    "h264_nvenc": ["p1", "p2", "p3", "p4", "p5", "p6", "p7"],
    "h264_qsv": ["veryfast", "faster", "fast", "medium", "slow"],
}
# goal -> preset per encoder for normal priority
GOAL_PRESETS = {
    "draft": {"libx264": "ultrafast", "h264_nvenc": "p1", "h264_qsv": "veryfast"},
    "quality": {"libx264": "slow", "h264_nvenc": "p6", "h264_qsv": "slow"},
}
STANDARD_PRESETS = {"libx264": "fast", "h264_nvenc": "p4", "h264_qsv": "fast"}
GOAL_BITRATE_FACTOR = {"quality": 1.5, "draft": 0.5}


@dataclass
class Intent:
    goal: str = DEFAULT_GOAL
    platform: str = DEFAULT_PLATFORM
    tool: str = DEFAULT_TOOL
    priority: str = DEFAULT_PRIORITY

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "Intent":
        data = raw if isinstance(raw, Mapping) else {}

        def pick(key: str, allowed, default: str) -> str:
            value = str(data.get(key) or "").strip().lower().replace("_", "-")
            return value if value in allowed else default

        return cls(
            goal=pick("goal", GOALS, DEFAULT_GOAL),
            platform=pick("platform", PLATFORMS, DEFAULT_PLATFORM),
            tool=pick("tool", TOOLS, DEFAULT_TOOL),
            priority=pick("priority", PRIORITIES, DEFAULT_PRIORITY),
        )


@dataclass
class Load:
    active: int = 0
    waiting: int = 0
    capacity: int = 1
    max_depth: int = 100

    @property
    def overloaded(self) -> bool:
        return self.waiting >= self.max_depth * 0.9


@dataclass
class ExecutionDecision:
    encoder: str
    preset: Optional[str]
    width: int
    height: int
    fps: int
    video_bitrate: int
    audio_bitrate: int
    constraints: Dict[str, Any]
    engine: str
    fallback_chain: List[str]
    reasons: List[str] = field(default_factory=list)
    fallback_used: bool = False
    # preset to use if the render falls back to each encoder in the chain
    fallback_presets: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["resolution"] = self.resolution
        return data


def default_decision(reason: str = "default plan") -> ExecutionDecision:
    """The plan used whenever the real decision cannot be made."""
    width, height = RESOLUTIONS["9:16"]
    return ExecutionDecision(
        encoder=CPU_ENCODER,
        preset="fast",
        width=width,
        height=height,
        fps=DEFAULT_FPS,
        video_bitrate=_bitrate_for(width, height, DEFAULT_FPS),
        audio_bitrate=AUDIO_BITRATE,
        constraints={
            "min_duration": MIN_DURATION_SEC,
            "max_duration": PLATFORMS[DEFAULT_PLATFORM][1],
            "aspect_ratio": "9:16",
            "two_pass": False,
            "degraded": False,
        },
        engine="ffmpeg-native",
        fallback_chain=[CPU_ENCODER],
        fallback_presets={CPU_ENCODER: "fast"},
        reasons=[reason],
        fallback_used=True,
    )


def _bitrate_for(width: int, height: int, fps: int, factor: float = 1.0) -> int:
    raw = width * height * fps * BITS_PER_PIXEL * factor
    return max(300_000, int(round(raw / 100_000)) * 100_000)


def _shift_preset(encoder: str, preset: Optional[str], steps: int) -> Optional[str]:
    """Move ``steps`` along the preset ladder; negative is faster."""
    ladder = PRESETS.get(encoder)
    if not ladder or preset not in ladder:
        return preset
    idx = max(0, min(len(ladder) - 1, ladder.index(preset) + steps))
    return ladder[idx]


def _gpu_usable(caps: Capabilities, load: Load) -> Tuple[bool, str]:
    if not caps.ffmpeg_available:
        return False, "ffmpeg unavailable"
    if not caps.hardware_encoding:
        return False, "no hardware encoder detected"
    slots = 1
    if caps.best_encoder == "h264_nvenc":
        if not caps.gpu.available:
            return False, "h264_nvenc listed but no NVIDIA GPU detected"
        slots = max(1, caps.gpu.count)
    if load.active >= slots * 2:
        return False, f"GPU saturated ({load.active} active on {slots} slot(s))"
    return True, f"{caps.best_encoder} available"


def effective_priority(tool: str, priority: str) -> str:
    """Batch work never outranks interactive jobs."""
    if tool == "batch" and priority == "high":
        return "normal"
    return priority


def _preset_for(encoder: str, goal: str, priority: str, degraded: bool) -> Optional[str]:
    if encoder == "h264_vaapi":
        return None
    preset = GOAL_PRESETS.get(goal, STANDARD_PRESETS).get(encoder, STANDARD_PRESETS.get(encoder))
    if priority == "high":
        preset = _shift_preset(encoder, preset, -1)
    elif priority == "low" and goal != "draft":
        preset = _shift_preset(encoder, preset, 1)
    if degraded:
        preset = _shift_preset(encoder, preset, -1)
    return preset


def _decide(intent: Intent, caps: Capabilities, load: Load) -> ExecutionDecision:
    reasons: List[str] = []
    aspect, max_duration = PLATFORMS[intent.platform]
    reasons.append(f"platform {intent.platform}: {aspect}, max {max_duration:g}s")

    priority = effective_priority(intent.tool, intent.priority)
    if priority != intent.priority:
        reasons.append("batch jobs capped at normal priority")

    use_gpu, why = _gpu_usable(caps, load)
    encoder = caps.best_encoder if use_gpu else CPU_ENCODER
    reasons.append(f"encoder {encoder}: {why}")

    degraded = load.overloaded or (
        encoder == CPU_ENCODER and load.waiting > max(1, load.capacity) * 2
    )
    if intent.tool == "preview":
        degraded = True
        reasons.append("preview renders use reduced resolution")
    elif degraded:
        reasons.append(f"queue pressure ({load.waiting} waiting): reduced resolution")

    chain = [encoder] if encoder == CPU_ENCODER else [encoder, CPU_ENCODER]
    presets = {enc: _preset_for(enc, intent.goal, priority, degraded) for enc in chain}
    preset = presets[encoder]

    width, height = (DEGRADED_RESOLUTIONS if degraded else RESOLUTIONS)[aspect]

    factor = GOAL_BITRATE_FACTOR.get(intent.goal, 1.0)
    video_bitrate = _bitrate_for(width, height, DEFAULT_FPS, factor)

    two_pass = (
        intent.goal == "quality" and encoder == CPU_ENCODER and not degraded and load.waiting == 0
    )
    if two_pass:
        reasons.append("quality goal on idle CPU: two-pass")

    return ExecutionDecision(
        encoder=encoder,
        preset=preset,
        width=width,
        height=height,
        fps=DEFAULT_FPS,
        video_bitrate=video_bitrate,
        audio_bitrate=AUDIO_BITRATE,
        constraints={
            "min_duration": MIN_DURATION_SEC,
            "max_duration": max_duration,
            "aspect_ratio": aspect,
            "two_pass": two_pass,
            "degraded": degraded,
        },
        engine="ffmpeg-gpu" if encoder != CPU_ENCODER else "ffmpeg-native",
        fallback_chain=chain,
        fallback_presets=presets,
        reasons=reasons,
    )


def decide_execution(intent: Any, caps: Capabilities, load: Optional[Load] = None) -> ExecutionDecision:
    try:
        if not isinstance(intent, Intent):
            intent = Intent.from_dict(intent)
        decision = _decide(intent, caps, load or Load())
    except Exception as e:
        logger.exception("Execution decision failed, using default plan")
        return default_decision(f"decision error: {e}")
    logger.info(
        "Decision for %s/%s: %s %s %s",
        intent.platform,
        intent.goal,
        decision.encoder,
        decision.preset,
        decision.resolution,
    )
    return decision
