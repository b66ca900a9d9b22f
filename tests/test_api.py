import json

import pytest
from httpx import AsyncClient, ASGITransport

from renderflow import main as app_module
from renderflow.capabilities import Capabilities
from renderflow.jobs import JobQueue


@pytest.fixture
def cpu_only(monkeypatch):
    caps = Capabilities(ffmpeg_available=True, ffmpeg_version="6.1", cpu_cores=8)
    monkeypatch.setattr(app_module, "detect_capabilities", lambda: caps)
    return caps


def _client():
    return AsyncClient(transport=ASGITransport(app=app_module.app), base_url="http://test")


@pytest.mark.asyncio
async def test_plan_preview(cpu_only):
    payload = {
        "intent": {"platform": "youtube", "goal": "quality"},
        "request": {
            "timeline": [
                {"asset_url": "/media/a.mp4", "trim_start_ms": 0, "trim_end_ms": 8000},
                {"asset_url": "/media/b.mp4", "trim_start_ms": 0, "trim_end_ms": 8000},
            ]
        },
    }
    async with _client() as client:
        resp = await client.post("/plan", json=payload)
    assert resp.status_code == 200
    plan = resp.json()["plan"]
    assert plan["decision"]["resolution"] == "1920x1080"
    assert plan["duration_sec"] == 16.0
    assert "concat=n=2" in plan["filter_complex"]
    assert plan["estimate"]["render_seconds"] > 16


@pytest.mark.asyncio
async def test_plan_with_bad_intent_uses_defaults(cpu_only):
    payload = {
        "intent": "nonsense",
        "request": {"timeline": [{"asset_url": "/media/a.mp4", "trim_end_ms": 10000}]},
    }
    async with _client() as client:
        resp = await client.post("/plan", json=payload)
    assert resp.status_code == 200
    decision = resp.json()["plan"]["decision"]
    assert decision["resolution"] == "1080x1920"
    assert decision["encoder"] == "libx264"


@pytest.mark.asyncio
async def test_plan_rejects_empty_timeline(cpu_only):
    async with _client() as client:
        resp = await client.post("/plan", content=b"not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_jobs_queue_overflow(cpu_only, monkeypatch):
    monkeypatch.setattr(app_module, "QUEUE", JobQueue(max_depth=0))
    payload = {"request": {"timeline": [{"asset_url": "/media/a.mp4", "trim_end_ms": 10000}]}}
    async with _client() as client:
        resp = await client.post("/jobs", json=payload)
    assert resp.status_code == 429
    assert resp.json()["error"] == "queue_overflow"


@pytest.mark.asyncio
async def test_brain_endpoint():
    payload = {"number_of_videos": 5, "market": "usa", "platform": "tiktok", "available_api_keys": ["KLING_API_KEY"]}
    async with _client() as client:
        resp = await client.post("/brain", json=payload)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["decisions"]) == 5
    assert [d["engine_tier"] for d in body["decisions"]] == ["free", "free", "low", "low", "free"]
    assert body["quick_estimate"]["strategy"].startswith("~2 free")


@pytest.mark.asyncio
async def test_health(cpu_only):
    async with _client() as client:
        resp = await client.get("/health")
    body = resp.json()
    assert body["ok"] is True
    assert body["ffmpeg"]["encoders"] == {"cpu": "libx264", "gpu": None}
    assert body["gpu"]["available"] is False
    assert "waiting" in body["queue"]
    assert body["storage"]["available"] is True


@pytest.mark.asyncio
async def test_unknown_job_events_and_status():
    async with _client() as client:
        resp = await client.get("/jobs/nope")
        assert resp.status_code == 404
        async with client.stream("GET", "/events/nope") as stream:
            lines = [line async for line in stream.aiter_lines() if line.startswith("data:")]
    assert json.loads(lines[0][5:])["message"] == "Unknown job"


@pytest.mark.asyncio
async def test_plan_rejects_malformed_timeline(cpu_only):
    async with _client() as client:
        resp = await client.post("/plan", json={"request": {"timeline": 5}})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_batch_jobs_queue_at_normal_priority(cpu_only, monkeypatch):
    queue = JobQueue()
    monkeypatch.setattr(app_module, "QUEUE", queue)
    monkeypatch.setattr(app_module, "_dispatch", lambda: None)
    timeline = {"timeline": [{"asset_url": "/media/a.mp4", "trim_end_ms": 10000}]}
    async with _client() as client:
        interactive = await client.post("/jobs", json={"intent": {"priority": "normal"}, "request": timeline})
        batch = await client.post(
            "/jobs", json={"intent": {"tool": "batch", "priority": "high"}, "request": timeline}
        )
        urgent = await client.post("/jobs", json={"priority": "high", "request": timeline})
    batch_job = queue.get(batch.json()["job_id"])
    assert batch_job.priority == "normal"
    assert queue.position(urgent.json()["job_id"]) == 1
    assert queue.position(interactive.json()["job_id"]) == 2
    assert queue.position(batch_job.job_id) == 3
