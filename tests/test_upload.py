import pytest
from httpx import AsyncClient, ASGITransport

from renderflow import config
from renderflow import main as app_module
from renderflow.main import app


@pytest.mark.asyncio
async def test_upload_reject_unsupported_file_type():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/upload",
            files={"file": ("test.txt", b"hello world", "text/plain")},
        )
        assert resp.status_code == 400


@pytest.mark.asyncio
async def test_upload_reject_large_file(monkeypatch):
    monkeypatch.setattr(config, "MAX_UPLOAD_MB", 0.000001)
    file_content = b"x" * (2 * 1024 * 1024)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/upload",
            files={"file": ("big.mp4", file_content, "video/mp4")},
        )
        assert resp.status_code == 400
        assert "limit" in resp.json()["detail"].lower()


@pytest.mark.asyncio
async def test_upload_probe_failure(monkeypatch):
    def broken_probe(path):
        raise FileNotFoundError(path)

    monkeypatch.setattr(app_module, "probe_info", broken_probe)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/upload",
            files={"file": ("clip.mp4", b"data" * 256, "video/mp4")},
        )
        assert resp.status_code == 400
        assert "probe failed" in resp.json()["detail"].lower()


@pytest.mark.asyncio
async def test_upload_returns_asset_reference(monkeypatch):
    monkeypatch.setattr(app_module, "probe_info", lambda path: (12.5, 1080, 1920))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/upload",
            files={"file": ("ad.png", b"\x89PNG" * 64, "image/png")},
        )
    assert resp.status_code == 200
    body = resp.json()
    assert body["asset_url"] == f"upload:{body['upload_id']}"
    assert body["duration_sec"] == 12.5
    meta = app_module.UPLOADS[body["upload_id"]]
    assert meta.src_path.suffix == ".png"
    assert meta.src_path.exists()
