# renderflow/compiler.py
"""Compile an execution decision + timeline request into ffmpeg arguments.

The estimate is linear: ``duration / speed_factor + BUFFER_SECONDS``.
"""
from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from . import config
from .capabilities import CPU_ENCODER
from .decision import (
    STANDARD_PRESETS,
    ExecutionDecision,
    Load,
    decide_execution,
    default_decision,
)
from .log import setup_logger

logger = setup_logger(__name__)

BUFFER_SECONDS = 5.0
TRANSITION_SEC = 0.5
DEFAULT_CLIP_SEC = 3.0
MIN_SPEED, MAX_SPEED = 0.25, 4.0
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")

# realtime multiples per encoder / preset
SPEED_FACTORS = {
    "h264_nvenc": 4.0,
    "h264_vaapi": 3.0,
    "h264_qsv": 3.0,
}
X264_SPEED_FACTORS = {
    "ultrafast": 3.0,
    "superfast": 2.5,
    "veryfast": 2.0,
    "faster": 1.5,
    "fast": 1.0,
    "medium": 0.7,
    "slow": 0.4,
}
# USD per second of render time
COST_PER_SECOND = {"cpu": 0.0002, "gpu": 0.0005}

XFADE_TRANSITIONS = {
    "whip-pan": "wipeleft",
    "slide": "slideleft",
    "zoom": "circlecrop",
}

# drawtext option values may not contain filter-graph syntax (: , ; [ ] ' =)
_COLOR_RE = re.compile(r"^[A-Za-z0-9#]+(@[0-9.]+)?$")
_POSITION_RE = re.compile(r"^[A-Za-z0-9_+\-*/(). ]+$")
_FONT_FILE_RE = re.compile(r"^[A-Za-z0-9_./ -]+$")


class PlanError(ValueError):
    pass


def _to_float(value: Any, fallback: float) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return float(fallback)
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return float(fallback)
    return numeric


def _num(value: float) -> str:
    return f"{round(value, 3):g}"


def _items(data: Mapping[str, Any], key: str) -> List[Any]:
    value = data.get(key)
    return value if isinstance(value, list) else []


def _safe(value: Any, pattern: "re.Pattern[str]", default: Optional[str]) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    return text if text and pattern.match(text) else default


@dataclass
class Segment:
    asset_url: str
    trim_start_ms: float = 0.0
    trim_end_ms: Optional[float] = None
    speed: float = 1.0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Segment":
        end = raw.get("trim_end_ms")
        return cls(
            asset_url=str(raw.get("asset_url") or "").strip(),
            trim_start_ms=max(0.0, _to_float(raw.get("trim_start_ms"), 0.0)),
            trim_end_ms=_to_float(end, 0.0) if end is not None else None,
            speed=max(MIN_SPEED, min(MAX_SPEED, _to_float(raw.get("speed"), 1.0))),
        )

    @property
    def duration_sec(self) -> Optional[float]:
        """Output duration after trim and speed, or None when the end is open."""
        if self.trim_end_ms is None or self.trim_end_ms <= self.trim_start_ms:
            return None
        return (self.trim_end_ms - self.trim_start_ms) / 1000.0 / self.speed


@dataclass
class TextOverlay:
    content: str
    start_ms: float = 0.0
    end_ms: Optional[float] = None
    x: str = "(w-text_w)/2"
    y: str = "h*0.8"
    font_size: int = 48
    color: str = "white"
    box: bool = False
    box_color: str = "black@0.5"
    font_file: Optional[str] = None

    def __post_init__(self):
        # anything that is not a plain color / expression / path reverts to the default
        self.x = _safe(self.x, _POSITION_RE, "(w-text_w)/2")
        self.y = _safe(self.y, _POSITION_RE, "h*0.8")
        self.color = _safe(self.color, _COLOR_RE, "white")
        self.box_color = _safe(self.box_color, _COLOR_RE, "black@0.5")
        self.font_file = _safe(self.font_file, _FONT_FILE_RE, None)
        self.font_size = max(8, min(400, int(_to_float(self.font_size, 48))))

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TextOverlay":
        end = raw.get("end_ms")
        return cls(
            content=str(raw.get("content") or ""),
            start_ms=max(0.0, _to_float(raw.get("start_ms"), 0.0)),
            end_ms=_to_float(end, 0.0) if end is not None else None,
            x=raw.get("x"),
            y=raw.get("y"),
            font_size=raw.get("font_size"),
            color=raw.get("color"),
            box=bool(raw.get("box")),
            box_color=raw.get("box_color"),
            font_file=raw.get("font_file"),
        )


@dataclass
class AudioTrack:
    asset_url: str
    start_ms: float = 0.0
    end_ms: Optional[float] = None
    trim_start_ms: float = 0.0
    volume: float = 1.0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "AudioTrack":
        end = raw.get("end_ms")
        return cls(
            asset_url=str(raw.get("asset_url") or "").strip(),
            start_ms=max(0.0, _to_float(raw.get("start_ms"), 0.0)),
            end_ms=_to_float(end, 0.0) if end is not None else None,
            trim_start_ms=max(0.0, _to_float(raw.get("trim_start_ms"), 0.0)),
            volume=max(0.0, min(2.0, _to_float(raw.get("volume"), 1.0))),
        )


@dataclass
class RenderRequest:
    timeline: List[Segment] = field(default_factory=list)
    text_overlays: List[TextOverlay] = field(default_factory=list)
    audio_tracks: List[AudioTrack] = field(default_factory=list)
    transitions: List[str] = field(default_factory=list)
    target_duration: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "RenderRequest":
        data = raw if isinstance(raw, Mapping) else {}
        target = _to_float(data.get("target_duration"), 0.0)
        return cls(
            timeline=[Segment.from_dict(s) for s in _items(data, "timeline") if isinstance(s, Mapping)],
            text_overlays=[
                TextOverlay.from_dict(t) for t in _items(data, "text_overlays") if isinstance(t, Mapping)
            ],
            audio_tracks=[
                AudioTrack.from_dict(a) for a in _items(data, "audio_tracks") if isinstance(a, Mapping)
            ],
            transitions=[str(t) for t in _items(data, "transitions")],
            target_duration=target if target > 0 else None,
        )

    def asset_urls(self) -> List[str]:
        urls = [s.asset_url for s in self.timeline] + [a.asset_url for a in self.audio_tracks]
        return list(dict.fromkeys(u for u in urls if u))

    def with_assets(self, mapping: Mapping[str, str]) -> "RenderRequest":
        """Copy of the request with asset URLs swapped for local paths."""
        return replace(
            self,
            timeline=[replace(s, asset_url=mapping.get(s.asset_url, s.asset_url)) for s in self.timeline],
            audio_tracks=[
                replace(a, asset_url=mapping.get(a.asset_url, a.asset_url)) for a in self.audio_tracks
            ],
        )


@dataclass
class RenderEstimate:
    render_seconds: float
    speed_factor: float
    cost_usd: float


@dataclass
class RenderPlan:
    inputs: List[str]
    filter_complex: str
    video_label: str
    audio_label: Optional[str]
    encoder: str
    passes: List[List[str]]
    duration_sec: float
    estimate: RenderEstimate
    decision: ExecutionDecision
    request: RenderRequest
    output_path: str
    pass_log_prefix: Optional[str] = None

    @property
    def args(self) -> List[str]:
        return self.passes[-1]

    def pass_log_files(self) -> List[Path]:
        """Stats files libx264 leaves behind after a two-pass encode."""
        if not self.pass_log_prefix:
            return []
        return [Path(f"{self.pass_log_prefix}-0.log{ext}") for ext in ("", ".mbtree", ".temp", ".mbtree.temp")]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputs": list(self.inputs),
            "filter_complex": self.filter_complex,
            "encoder": self.encoder,
            "args": list(self.args),
            "passes": [list(p) for p in self.passes],
            "duration_sec": self.duration_sec,
            "estimate": asdict(self.estimate),
            "decision": self.decision.to_dict(),
        }


def estimate_render(
    duration_sec: float, encoder: str, preset: Optional[str], two_pass: bool = False
) -> RenderEstimate:
    if encoder == CPU_ENCODER:
        speed = X264_SPEED_FACTORS.get(preset or "", 1.0)
    else:
        speed = SPEED_FACTORS.get(encoder, 1.0)
    work = duration_sec * (2 if two_pass else 1)
    seconds = work / speed + BUFFER_SECONDS
    rate = COST_PER_SECOND["cpu" if encoder == CPU_ENCODER else "gpu"]
    return RenderEstimate(
        render_seconds=round(seconds, 1),
        speed_factor=speed,
        cost_usd=round(seconds * rate, 4),
    )


def clamp_duration(duration: float, decision: ExecutionDecision) -> float:
    lo = float(decision.constraints.get("min_duration", 0.0))
    hi = float(decision.constraints.get("max_duration", duration))
    return max(lo, min(hi, duration))


def escape_drawtext(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(":", "\\:")
        .replace("%", "\\%")
        .replace("'", "'\\\\''")
    )


def _is_image(url: str) -> bool:
    return url.lower().split("?")[0].endswith(IMAGE_EXTENSIONS)


def _segment_lengths(request: RenderRequest) -> List[Optional[float]]:
    lengths = [s.duration_sec for s in request.timeline]
    if request.transitions and len(lengths) > 1:
        # xfade offsets need a known length for every clip
        lengths = [d if d is not None else DEFAULT_CLIP_SEC for d in lengths]
    return lengths


def _planned_duration(request: RenderRequest, lengths: List[Optional[float]], decision) -> float:
    if request.target_duration:
        raw = request.target_duration
    elif all(d is not None for d in lengths):
        raw = sum(lengths)  # type: ignore[arg-type]
        if request.transitions and len(lengths) > 1:
            raw -= TRANSITION_SEC * (len(lengths) - 1)
    else:
        raw = float(decision.constraints.get("max_duration", 30.0))
    return clamp_duration(raw, decision)


def _build_graph(
    request: RenderRequest, decision: ExecutionDecision, duration: float
) -> Tuple[List[Tuple[str, float]], List[str], str, Optional[str]]:
    inputs: List[Tuple[str, float]] = []
    index: Dict[str, int] = {}
    filters: List[str] = []
    w, h = decision.width, decision.height

    def input_for(url: str, length: float) -> int:
        # a reused still keeps the longest source span any segment needs
        if url not in index:
            index[url] = len(inputs)
            inputs.append((url, length))
        else:
            known = inputs[index[url]][1]
            inputs[index[url]] = (url, max(known, length))
        return index[url]

    lengths = _segment_lengths(request)
    labels = []
    for i, seg in enumerate(request.timeline):
        seg_len = lengths[i]
        start = seg.trim_start_ms / 1000
        if seg.duration_sec is not None:
            source_len = seg.trim_end_ms / 1000  # type: ignore[operator]
        else:
            source_len = start + (seg_len if seg_len is not None else duration) * seg.speed
        idx = input_for(seg.asset_url, source_len)
        trim = f"trim=start={_num(start)}"
        if seg.duration_sec is not None:
            trim += f":end={_num(seg.trim_end_ms / 1000)}"  # type: ignore[operator]
        elif seg_len is not None:
            trim += f":duration={_num(seg_len * seg.speed)}"
        pts = "setpts=PTS-STARTPTS" if seg.speed == 1.0 else f"setpts=(PTS-STARTPTS)/{_num(seg.speed)}"
        filters.append(
            f"[{idx}:v]{trim},{pts},"
            f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={decision.fps}[v{i}]"
        )
        labels.append(f"v{i}")

    if len(labels) == 1:
        last = labels[0]
    elif request.transitions:
        last = labels[0]
        elapsed = lengths[0] or DEFAULT_CLIP_SEC
        for i in range(1, len(labels)):
            kind = request.transitions[(i - 1) % len(request.transitions)]
            xfade = XFADE_TRANSITIONS.get(kind, "fade")
            offset = max(0.0, elapsed - TRANSITION_SEC)
            out = "vjoin" if i == len(labels) - 1 else f"x{i}"
            filters.append(
                f"[{last}][{labels[i]}]xfade=transition={xfade}:"
                f"duration={_num(TRANSITION_SEC)}:offset={_num(offset)}[{out}]"
            )
            elapsed = offset + (lengths[i] or DEFAULT_CLIP_SEC)
            last = out
    else:
        filters.append("".join(f"[{l}]" for l in labels) + f"concat=n={len(labels)}:v=1:a=0[vjoin]")
        last = "vjoin"

    for i, overlay in enumerate(request.text_overlays):
        if not overlay.content:
            continue
        start = overlay.start_ms / 1000
        end = overlay.end_ms / 1000 if overlay.end_ms is not None else duration
        font = f"fontfile='{overlay.font_file}':" if overlay.font_file else ""
        box = f"box=1:boxcolor={overlay.box_color}:boxborderw=5:" if overlay.box else ""
        out = f"txt{i}"
        filters.append(
            f"[{last}]drawtext={font}text='{escape_drawtext(overlay.content)}':"
            f"fontsize={overlay.font_size}:fontcolor={overlay.color}:"
            f"x={overlay.x}:y={overlay.y}:{box}"
            f"enable='between(t,{_num(start)},{_num(end)})'[{out}]"
        )
        last = out

    if decision.encoder == "h264_vaapi":
        filters.append(f"[{last}]format=nv12,hwupload[vhw]")
        last = "vhw"

    audio_labels = []
    for i, track in enumerate(request.audio_tracks):
        if not track.asset_url:
            continue
        idx = input_for(track.asset_url, duration)
        end = track.end_ms / 1000 if track.end_ms is not None else duration
        length = max(0.0, min(end, duration) - track.start_ms / 1000)
        delay = int(track.start_ms)
        filters.append(
            f"[{idx}:a]atrim=start={_num(track.trim_start_ms / 1000)}:duration={_num(length)},"
            f"asetpts=PTS-STARTPTS,adelay={delay}|{delay},volume={_num(track.volume)}[a{i}]"
        )
        audio_labels.append(f"a{i}")

    audio_last: Optional[str] = None
    if len(audio_labels) == 1:
        audio_last = audio_labels[0]
    elif audio_labels:
        filters.append(
            "".join(f"[{l}]" for l in audio_labels)
            + f"amix=inputs={len(audio_labels)}:duration=longest[aout]"
        )
        audio_last = "aout"

    return inputs, filters, last, audio_last


def encoder_args(decision: ExecutionDecision) -> List[str]:
    enc = decision.encoder
    bps = decision.video_bitrate
    if enc == "h264_nvenc":
        return ["-c:v", enc, "-preset", decision.preset or "p4", "-rc", "vbr",
                "-b:v", str(bps), "-maxrate", str(int(bps * 1.2)), "-bufsize", str(bps * 2)]
    if enc == "h264_vaapi":
        return ["-c:v", enc, "-b:v", str(bps), "-maxrate", str(int(bps * 1.2))]
    if enc == "h264_qsv":
        return ["-c:v", enc, "-preset", decision.preset or "fast",
                "-b:v", str(bps), "-maxrate", str(int(bps * 1.2))]
    args = ["-c:v", CPU_ENCODER, "-preset", decision.preset or "fast", "-pix_fmt", "yuv420p"]
    if decision.constraints.get("two_pass"):
        return args + ["-b:v", str(bps)]
    return args + ["-crf", "23", "-maxrate", str(int(bps * 1.2)), "-bufsize", str(bps * 2)]


def compile_render_plan(
    request: RenderRequest, decision: ExecutionDecision, output_path: str
) -> RenderPlan:
    if not request.timeline:
        raise PlanError("Render request has an empty timeline")
    missing = [i for i, s in enumerate(request.timeline) if not s.asset_url]
    if missing:
        raise PlanError(f"Timeline segment(s) {missing} have no asset_url")

    lengths = _segment_lengths(request)
    duration = _planned_duration(request, lengths, decision)
    inputs, filters, video_label, audio_label = _build_graph(request, decision, duration)

    head = ["-y"]
    if decision.encoder == "h264_vaapi":
        head += ["-vaapi_device", config.VAAPI_DEVICE]
    for url, length in inputs:
        if _is_image(url):
            head += ["-loop", "1", "-t", _num(length)]
        head += ["-i", url]
    filter_complex = ";".join(filters)
    head += ["-filter_complex", filter_complex, "-map", f"[{video_label}]"]

    video = encoder_args(decision) + ["-r", str(decision.fps), "-t", _num(duration)]
    if audio_label:
        audio = ["-map", f"[{audio_label}]", "-c:a", "aac", "-b:a", str(decision.audio_bitrate)]
    else:
        audio = ["-an"]
    tail = ["-movflags", "+faststart"] if decision.encoder == CPU_ENCODER else []

    two_pass = bool(decision.constraints.get("two_pass")) and decision.encoder == CPU_ENCODER
    log_prefix: Optional[str] = None
    if two_pass:
        # stats files stay out of the public output dir
        log_prefix = str(config.TEMP_DIR / f"{Path(output_path).stem}-2pass")
        passes = [
            head + video + ["-pass", "1", "-passlogfile", log_prefix, "-an", "-f", "mp4", os.devnull],
            head + video + ["-pass", "2", "-passlogfile", log_prefix] + audio + tail + [output_path],
        ]
    else:
        passes = [head + video + audio + tail + [output_path]]

    return RenderPlan(
        inputs=[url for url, _ in inputs],
        filter_complex=filter_complex,
        video_label=video_label,
        audio_label=audio_label,
        encoder=decision.encoder,
        passes=passes,
        duration_sec=duration,
        estimate=estimate_render(duration, decision.encoder, decision.preset, two_pass),
        decision=decision,
        request=request,
        output_path=output_path,
        pass_log_prefix=log_prefix,
    )


def with_encoder(plan: RenderPlan, encoder: str) -> RenderPlan:
    """Recompile ``plan`` for a fallback encoder."""
    constraints = dict(plan.decision.constraints, two_pass=False)
    decision = replace(
        plan.decision,
        encoder=encoder,
        preset=plan.decision.fallback_presets.get(encoder, STANDARD_PRESETS.get(encoder)),
        engine="ffmpeg-native" if encoder == CPU_ENCODER else "ffmpeg-gpu",
        constraints=constraints,
        reasons=plan.decision.reasons + [f"fallback to {encoder}"],
        fallback_used=True,
    )
    return compile_render_plan(plan.request, decision, plan.output_path)


def build_plan_safely(
    request: Any, intent: Any, caps, load: Optional[Load], output_path: str
) -> RenderPlan:
    """Decide and compile; degrade to a one-segment CPU plan when compiling fails."""
    if not isinstance(request, RenderRequest):
        request = RenderRequest.from_dict(request)
    decision = decide_execution(intent, caps, load)
    try:
        return compile_render_plan(request, decision, output_path)
    except PlanError as e:
        first = next((s for s in request.timeline if s.asset_url), None)
        if first is None:
            raise
        logger.warning("Plan compile failed (%s); using single-segment default plan", e)
    except Exception as e:
        first = next((s for s in request.timeline if s.asset_url), None)
        if first is None:
            raise PlanError("Render request has no usable asset") from e
        logger.exception("Plan compile crashed; using single-segment default plan")
    fallback = RenderRequest(timeline=[first], target_duration=request.target_duration)
    return compile_render_plan(fallback, default_decision("compile fallback"), output_path)
