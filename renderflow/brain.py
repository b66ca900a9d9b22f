# renderflow/brain.py
"""Deterministic creative decisions for a batch of ad variations.

Frameworks, hooks and video types rotate through per-market preference lists.
The first 40% of variations use the free FFmpeg tier; later ones move to paid
engine tiers only when a matching provider key is configured.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

MIN_DURATION = 20
MAX_DURATION = 35
MAX_VARIATIONS = 50
FREE_TIER_SHARE = 0.4
LOW_TIER_SHARE = 0.8


@dataclass(frozen=True)
class EngineTier:
    id: str
    cost_per_second: float
    min_cost: float
    max_cost: float
    capabilities: Tuple[str, ...]
    providers: Tuple[str, ...]


ENGINE_TIERS: Dict[str, EngineTier] = {
    "free": EngineTier(
        "free", 0.0, 0.0, 0.0,
        ("ffmpeg-transform", "pan-zoom", "ken-burns", "parallax", "shake"),
        ("FFMPEG-Local", "FFMPEG-Edge"),
    ),
    "low": EngineTier(
        "low", 0.004, 0.05, 0.15,
        ("image-to-video", "basic-generation", "motion-consistency"),
        ("Kling-2.5", "MiniMax", "Wan-2.5", "Kie-Luma"),
    ),
    "medium": EngineTier(
        "medium", 0.015, 0.25, 0.50,
        ("full-generation", "text-rendering", "character-consistency"),
        ("Runway-Gen3", "Veo-3.1", "Luma-Dream", "Kie-Runway"),
    ),
    "premium": EngineTier(
        "premium", 0.08, 1.00, 2.50,
        ("cinematic", "photorealistic", "complex-camera", "physics-simulation"),
        ("Sora-2", "Sora-2-Pro", "Kie-Veo-3.1"),
    ),
}

# key substrings that unlock a tier
TIER_KEY_HINTS = {
    "low": ("kling", "minimax", "wan", "fal"),
    "medium": ("runway", "veo", "luma"),
    "premium": ("sora", "openai"),
}

MARKET_PREFERENCES: Dict[str, Dict[str, Any]] = {
    "saudi": {
        "frameworks": ["social-proof", "story-driven", "PAS"],
        "hooks": ["emotional", "story", "problem-solution"],
        "pacing": "medium",
        "video_types": ["ugc-review", "testimonial", "before-after"],
    },
    "uae": {
        "frameworks": ["AIDA", "offer-driven", "social-proof"],
        "hooks": ["emotional", "story", "shock"],
        "pacing": "medium",
        "video_types": ["lifestyle", "testimonial", "unboxing"],
    },
    "usa": {
        "frameworks": ["AIDA", "curiosity", "PAS"],
        "hooks": ["question", "shock", "humor"],
        "pacing": "fast",
        "video_types": ["ugc-review", "problem-solution", "lifestyle"],
    },
    "europe": {
        "frameworks": ["AIDA", "social-proof", "story-driven"],
        "hooks": ["statistic", "question", "story"],
        "pacing": "medium",
        "video_types": ["educational", "testimonial", "lifestyle"],
    },
    "latam": {
        "frameworks": ["PAS", "social-proof", "offer-driven"],
        "hooks": ["shock", "emotional", "humor"],
        "pacing": "fast",
        "video_types": ["ugc-review", "unboxing", "day-in-life"],
    },
    "gcc": {
        "frameworks": ["social-proof", "story-driven", "AIDA"],
        "hooks": ["emotional", "story", "problem-solution"],
        "pacing": "medium",
        "video_types": ["testimonial", "ugc-review", "before-after"],
    },
}

PLATFORM_ADJUSTMENTS: Dict[str, Dict[str, Any]] = {
    "tiktok": {"max_duration": 35, "pacing": "fast", "aspect_ratio": "9:16"},
    "instagram-reels": {"max_duration": 35, "pacing": "fast", "aspect_ratio": "9:16"},
    "youtube-shorts": {"max_duration": 35, "pacing": "medium", "aspect_ratio": "9:16"},
    "facebook": {"max_duration": 35, "pacing": "medium", "aspect_ratio": "4:5"},
    "instagram-feed": {"max_duration": 35, "pacing": "medium", "aspect_ratio": "1:1"},
}

TRANSITION_SETS = [
    ["hard-cut", "zoom"],
    ["slide", "whip-pan"],
    ["glitch", "hard-cut"],
    ["zoom", "slide"],
]

SCRIPT_FRAMEWORKS = ["PAS", "AIDA", "TESTIMONIAL", "PROBLEM_FIRST"]


@dataclass
class BrainInput:
    number_of_videos: int = 5
    language: str = "en"
    market: str = "usa"
    platform: str = "tiktok"
    source_video_duration: float = 0.0
    available_api_keys: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "BrainInput":
        data = raw if isinstance(raw, Mapping) else {}
        try:
            count = int(data.get("number_of_videos") or 5)
        except (TypeError, ValueError):
            count = 5
        try:
            source = float(data.get("source_video_duration") or 0.0)
        except (TypeError, ValueError):
            source = 0.0
        keys = data.get("available_api_keys") or []
        return cls(
            number_of_videos=count,
            language=str(data.get("language") or "en"),
            market=str(data.get("market") or "usa").strip().lower(),
            platform=str(data.get("platform") or "tiktok").strip().lower(),
            source_video_duration=source,
            available_api_keys=[str(k) for k in keys] if isinstance(keys, list) else [],
        )


@dataclass
class VariationDecision:
    variation_index: int
    framework: str
    video_type: str
    hook_type: str
    pacing: str
    transitions: List[str]
    engine_tier: str
    selected_provider: str
    use_ffmpeg_only: bool
    target_duration: int
    estimated_cost: float
    reasoning: Dict[str, str]


@dataclass
class BrainOutput:
    decisions: List[VariationDecision]
    cost_estimate: Dict[str, float]
    optimization_strategy: str
    global_settings: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CreativeBrain:
    def __init__(self, brain_input: BrainInput):
        self.input = brain_input
        self.total = max(1, min(MAX_VARIATIONS, int(brain_input.number_of_videos)))
        self.market = MARKET_PREFERENCES.get(brain_input.market, MARKET_PREFERENCES["usa"])
        self.platform = PLATFORM_ADJUSTMENTS.get(brain_input.platform, PLATFORM_ADJUSTMENTS["tiktok"])
        keys = [k.lower() for k in brain_input.available_api_keys]
        self.unlocked = {
            tier: any(hint in k for k in keys for hint in hints) for tier, hints in TIER_KEY_HINTS.items()
        }

    def generate_decisions(self) -> BrainOutput:
        decisions = [self.decide_for_variation(i) for i in range(self.total)]

        min_cost = sum(ENGINE_TIERS[d.engine_tier].min_cost for d in decisions)
        max_cost = sum(ENGINE_TIERS[d.engine_tier].max_cost for d in decisions)
        optimized = sum(d.estimated_cost for d in decisions)

        free = sum(1 for d in decisions if d.engine_tier == "free")
        paid = len(decisions) - free
        if free > paid:
            strategy = f"Cost-optimized: {free}/{len(decisions)} videos use free FFMPEG transforms"
        else:
            strategy = f"Quality-balanced: Mix of {free} free + {paid} AI-generated videos"

        return BrainOutput(
            decisions=decisions,
            cost_estimate={
                "minimum": round(min_cost, 4),
                "maximum": round(max_cost, 4),
                "optimized": round(optimized, 4),
            },
            optimization_strategy=strategy,
            global_settings={
                "enforced_min_duration": MIN_DURATION,
                "enforced_max_duration": self.max_duration,
                "primary_framework": self.market["frameworks"][0],
                "primary_hook": self.market["hooks"][0],
                "aspect_ratio": self.platform["aspect_ratio"],
            },
        )

    @property
    def max_duration(self) -> int:
        return min(MAX_DURATION, int(self.platform["max_duration"]))

    def decide_for_variation(self, index: int) -> VariationDecision:
        framework = self._rotate(self.market["frameworks"], index)
        video_type = self._rotate(self.market["video_types"], index)
        hook = self._rotate(self.market["hooks"], index)
        pacing = self.select_pacing(index)
        tier, provider, engine_reason = self.select_engine(index)
        duration, duration_reason = self.select_duration(index, pacing)
        cost = 0.0 if tier == "free" else ENGINE_TIERS[tier].cost_per_second * duration

        return VariationDecision(
            variation_index=index,
            framework=framework,
            video_type=video_type,
            hook_type=hook,
            pacing=pacing,
            transitions=list(TRANSITION_SETS[index % len(TRANSITION_SETS)]),
            engine_tier=tier,
            selected_provider=provider,
            use_ffmpeg_only=tier == "free",
            target_duration=duration,
            estimated_cost=round(cost, 4),
            reasoning={
                "framework": f"{framework} works best for {self.input.market} market with {video_type} content",
                "engine": engine_reason,
                "duration": duration_reason,
            },
        )

    @staticmethod
    def _rotate(options: List[str], index: int) -> str:
        return options[index % len(options)]

    def select_pacing(self, index: int) -> str:
        if index % 3 == 0:
            return self.platform["pacing"]
        if index % 3 == 1:
            return self.market["pacing"]
        return "dynamic"

    def select_engine(self, index: int) -> Tuple[str, str, str]:
        position = index / self.total
        if position < FREE_TIER_SHARE:
            tier, reason = "free", "Cost-optimized: using free FFMPEG transforms for variety"
        elif position < LOW_TIER_SHARE and self.unlocked["low"]:
            tier, reason = "low", "Balance: budget-friendly AI for a good quality/cost ratio"
        elif self.unlocked["medium"]:
            tier, reason = "medium", "Hero variation: higher quality AI for standout content"
        elif self.unlocked["premium"]:
            tier, reason = "premium", "Premium: cinematic quality for maximum impact"
        else:
            tier, reason = "free", "Fallback: no paid API keys configured, using free FFMPEG"
        providers = ENGINE_TIERS[tier].providers
        return tier, providers[index % len(providers)], reason

    def select_duration(self, index: int, pacing: str) -> Tuple[int, str]:
        if pacing == "fast":
            base, reason = 22, "Fast pacing: shorter duration for high energy"
        elif pacing == "slow":
            base, reason = 32, "Slow pacing: longer duration for story development"
        elif pacing == "dynamic":
            base, reason = MIN_DURATION + (index % 4) * 4, "Dynamic: varied duration for A/B testing"
        else:
            base, reason = 27, "Medium pacing: balanced duration"
        return max(MIN_DURATION, min(self.max_duration, base)), reason


def estimate_cost_range(number_of_videos: int, available_api_keys: List[str]) -> Dict[str, Any]:
    """Quick estimate without running the full brain; assumes 27s per video."""
    count = max(0, int(number_of_videos))
    free_ratio = 1.0 if not available_api_keys else FREE_TIER_SHARE
    free = int(count * free_ratio)
    paid = count - free
    avg_duration = 27

    if free > 0:
        strategy = f"~{free} free FFMPEG + ~{paid} AI-generated"
    else:
        strategy = f"All {count} AI-generated"
    return {
        "min": round(paid * ENGINE_TIERS["low"].min_cost, 4),
        "max": round(paid * ENGINE_TIERS["medium"].max_cost, 4),
        "optimized": round(paid * ENGINE_TIERS["low"].cost_per_second * avg_duration, 4),
        "strategy": strategy,
    }


def assign_frameworks(video_count: int) -> List[str]:
    return [SCRIPT_FRAMEWORKS[i % len(SCRIPT_FRAMEWORKS)] for i in range(max(0, int(video_count)))]
