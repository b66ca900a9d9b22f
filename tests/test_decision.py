from renderflow.capabilities import Capabilities, GpuInfo
from renderflow.decision import Intent, Load, decide_execution, default_decision, effective_priority


def cpu_caps():
    return Capabilities(ffmpeg_available=True, encoders=["libx264"], cpu_cores=8)


def nvenc_caps(gpus=1):
    return Capabilities(
        ffmpeg_available=True,
        encoders=["libx264", "h264_nvenc"],
        best_encoder="h264_nvenc",
        gpu_acceleration="nvidia",
        gpu=GpuInfo(available=gpus > 0, count=gpus, vendor="nvidia" if gpus else None),
        cpu_cores=8,
    )


def test_default_intent_on_cpu():
    d = decide_execution({}, cpu_caps())
    assert d.encoder == "libx264"
    assert d.preset == "fast"
    assert (d.width, d.height) == (1080, 1920)
    assert d.video_bitrate == 5_000_000
    assert d.constraints["max_duration"] == 35.0
    assert d.constraints["min_duration"] == 5.0
    assert d.engine == "ffmpeg-native"
    assert d.fallback_chain == ["libx264"]
    assert d.fallback_used is False


def test_gpu_path_with_cpu_fallback():
    d = decide_execution(Intent(), nvenc_caps())
    assert d.encoder == "h264_nvenc"
    assert d.preset == "p4"
    assert d.engine == "ffmpeg-gpu"
    assert d.fallback_chain == ["h264_nvenc", "libx264"]


def test_nvenc_without_gpu_uses_cpu():
    d = decide_execution(Intent(), nvenc_caps(gpus=0))
    assert d.encoder == "libx264"
    assert any("no NVIDIA GPU" in r for r in d.reasons)


def test_saturated_gpu_uses_cpu():
    d = decide_execution(Intent(), nvenc_caps(gpus=1), Load(active=2, waiting=0, capacity=1))
    assert d.encoder == "libx264"


def test_platform_shapes():
    yt = decide_execution({"platform": "youtube"}, cpu_caps())
    assert (yt.width, yt.height) == (1920, 1080)
    assert yt.constraints["max_duration"] == 60.0
    feed = decide_execution({"platform": "instagram_feed"}, cpu_caps())
    assert feed.constraints["aspect_ratio"] == "1:1"
    fb = decide_execution({"platform": "facebook"}, cpu_caps())
    assert (fb.width, fb.height) == (1080, 1350)


def test_quality_goal_on_idle_cpu_is_two_pass():
    d = decide_execution({"goal": "quality"}, cpu_caps(), Load())
    assert d.preset == "slow"
    assert d.constraints["two_pass"] is True
    assert d.video_bitrate == 7_500_000


def test_draft_goal():
    d = decide_execution({"goal": "draft"}, nvenc_caps())
    assert d.preset == "p1"
    assert d.video_bitrate == 2_500_000


def test_priority_moves_preset():
    assert decide_execution({"priority": "high"}, cpu_caps()).preset == "faster"
    assert decide_execution({"priority": "low"}, cpu_caps()).preset == "medium"


def test_batch_tool_caps_priority():
    d = decide_execution({"priority": "high", "tool": "batch"}, cpu_caps())
    assert d.preset == "fast"


def test_overloaded_queue_degrades():
    d = decide_execution({}, cpu_caps(), Load(active=1, waiting=95, capacity=2, max_depth=100))
    assert d.constraints["degraded"] is True
    assert (d.width, d.height) == (720, 1280)
    assert d.preset == "faster"
    assert d.video_bitrate == 2_200_000


def test_deep_cpu_backlog_degrades():
    d = decide_execution({}, cpu_caps(), Load(active=2, waiting=5, capacity=2))
    assert d.constraints["degraded"] is True


def test_preview_tool_is_reduced_resolution():
    d = decide_execution({"tool": "preview", "platform": "youtube"}, cpu_caps())
    assert (d.width, d.height) == (1280, 720)


def test_vaapi_has_no_preset():
    caps = Capabilities(ffmpeg_available=True, encoders=["libx264", "h264_vaapi"], best_encoder="h264_vaapi")
    d = decide_execution({}, caps)
    assert d.encoder == "h264_vaapi"
    assert d.preset is None


def test_intent_normalization():
    intent = Intent.from_dict({"goal": "WHAT", "platform": "Instagram_Reels", "priority": "HIGH"})
    assert intent.goal == "conversion"
    assert intent.platform == "instagram-reels"
    assert intent.priority == "high"
    assert intent.tool == "replicator"


def test_decision_never_raises():
    d = decide_execution({"goal": "quality"}, None)
    assert d.fallback_used is True
    assert d.encoder == "libx264"
    assert d.reasons[0].startswith("decision error")


def test_default_decision_shape():
    d = default_decision()
    assert d.resolution == "1080x1920"
    assert d.to_dict()["resolution"] == "1080x1920"


def test_effective_priority():
    assert effective_priority("batch", "high") == "normal"
    assert effective_priority("batch", "low") == "low"
    assert effective_priority("replicator", "high") == "high"


def test_fallback_presets_follow_goal_and_priority():
    d = decide_execution({"goal": "quality", "priority": "high"}, nvenc_caps())
    assert d.preset == "p5"
    assert d.fallback_presets == {"h264_nvenc": "p5", "libx264": "medium"}
    assert default_decision().fallback_presets == {"libx264": "fast"}
