import asyncio
import json
from pathlib import Path

import pytest
from httpx import AsyncClient, ASGITransport

from renderflow import config
from renderflow import main as app_module
from renderflow.capabilities import Capabilities


@pytest.mark.asyncio
async def test_full_happy_flow(monkeypatch):
    monkeypatch.setattr(config, "DOWNLOAD_TTL_MIN", 0.01)
    monkeypatch.setattr(app_module, "probe_info", lambda path: (10.0, 1080, 1920))
    monkeypatch.setattr(
        app_module, "detect_capabilities", lambda: Capabilities(ffmpeg_available=True, cpu_cores=4)
    )

    seen = {}

    async def fake_run_job(job):
        seen["plan"] = job.plan
        job.status = app_module.JobStatus.RUNNING
        app_module.put(job, type="progress", progress=50, status=app_module.JobStatus.RUNNING, message="Halfway")
        out_path = Path(job.plan.output_path)
        out_path.write_bytes(b"rendered")
        job.out_path = out_path
        job.status = app_module.JobStatus.DONE
        app_module.put(
            job,
            type="state",
            status=app_module.JobStatus.DONE,
            progress=100,
            message="Complete",
            download_url=f"{config.PUBLIC_BASE_URL}/media/{out_path.name}",
        )
        asyncio.create_task(app_module._schedule_cleanup(job.job_id))

    monkeypatch.setattr(app_module, "run_job", fake_run_job)

    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/upload", files={"file": ("source.mp4", b"x" * 1024, "video/mp4")})
        assert resp.status_code == 200
        asset_url = resp.json()["asset_url"]

        payload = {
            "intent": {"goal": "conversion", "platform": "tiktok", "priority": "high"},
            "request": {"timeline": [{"asset_url": asset_url, "trim_start_ms": 0, "trim_end_ms": 10000}]},
        }
        resp2 = await client.post("/jobs", json=payload)
        assert resp2.status_code == 200
        body = resp2.json()
        job_id = body["job_id"]
        assert body["plan"]["decision"]["encoder"] == "libx264"

        statuses = []
        download_url = None
        async with client.stream("GET", f"/events/{job_id}") as stream:
            async for line in stream.aiter_lines():
                if not line.startswith("data:"):
                    continue
                event = json.loads(line[5:])
                statuses.append(event["status"])
                if event.get("download_url"):
                    download_url = event["download_url"]
                    break
        assert download_url
        assert app_module.JobStatus.DONE in statuses

        status = await client.get(f"/jobs/{job_id}")
        assert status.json()["status"] == app_module.JobStatus.DONE

        dl = await client.get(f"/download/{job_id}")
        assert dl.status_code == 200

        media = await client.get(download_url)
        assert media.status_code == 200
        assert media.content == b"rendered"

        assert seen["plan"].duration_sec == 10.0

        await asyncio.sleep(1)
        assert app_module.QUEUE.get(job_id) is None
