# renderflow/main.py
from __future__ import annotations

import asyncio
import json
import re
import shlex
import subprocess
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import requests
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from . import config
from .brain import BrainInput, CreativeBrain, estimate_cost_range
from .capabilities import detect_capabilities, storage_info
from .compiler import PlanError, RenderPlan, build_plan_safely, compile_render_plan, with_encoder
from .decision import Intent, effective_priority
from .ffmpeg_errors import RenderError
from .jobs import JobQueue, JobState, JobStatus, QueueOverflow
from .log import setup_logger

logger = setup_logger(__name__)

UPLOAD_SCHEME = "upload:"

# ------------ App ------------
app = FastAPI(title="RenderFlow")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/media", StaticFiles(directory=str(config.OUTPUT_DIR)), name="media")


@dataclass
class UploadMeta:
    upload_id: str
    src_path: Path
    size_bytes: int
    content_type: str
    duration_sec: float
    width: int
    height: int


UPLOADS: Dict[str, UploadMeta] = {}
QUEUE = JobQueue(max_depth=config.MAX_QUEUE_DEPTH)


# ------------ Helpers ------------
def _run(cmd: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        shlex.split(cmd),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )


def probe_info(path: str) -> Tuple[float, int, int]:
    if not Path(path).exists():
        raise FileNotFoundError(path)
    d = _run(f"{config.FFPROBE_BIN} -v error -show_entries format=duration -of json {shlex.quote(path)}")
    dur = 0.0
    try:
        dur = float(json.loads(d.stdout or "{}").get("format", {}).get("duration", 0.0))
    except (TypeError, ValueError):
        pass
    s = _run(
        f"{config.FFPROBE_BIN} -v error -select_streams v:0 -show_entries stream=width,height "
        f"-of json {shlex.quote(path)}"
    )
    width = height = 0
    try:
        st = (json.loads(s.stdout or "{}").get("streams") or [{}])[0]
        width = int(st.get("width") or 0)
        height = int(st.get("height") or 0)
    except (TypeError, ValueError):
        pass
    return max(dur, 0.0), width, height


def put(job: JobState, **payload):
    job.q.put_nowait(payload)


def _log(job: JobState, message: str) -> None:
    job.logs.append(f"[{time.strftime('%H:%M:%S')}] {message}")


async def sse_stream(job: JobState) -> AsyncIterator[bytes]:
    yield f"data: {json.dumps({'type':'state','progress':round(job.progress,1),'status':job.status,'message':job.message})}\n\n".encode()
    if job.status in (JobStatus.DONE, JobStatus.ERROR) and job.q.empty():
        return
    last_heartbeat = time.time()
    while True:
        try:
            item = await asyncio.wait_for(job.q.get(), timeout=5.0)
            yield f"data: {json.dumps(item)}\n\n".encode()
            if item.get("status") in (JobStatus.DONE, JobStatus.ERROR):
                await asyncio.sleep(0.25)
                return
        except asyncio.TimeoutError:
            if time.time() - last_heartbeat >= 5:
                yield b": keep-alive\n\n"
                last_heartbeat = time.time()


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ------------ Security headers ------------
@app.middleware("http")
async def security_headers(request: Request, call_next):
    resp = await call_next(request)
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["Referrer-Policy"] = "no-referrer"
    return resp


# ------------ API ------------
@app.post("/upload")
async def upload(file: UploadFile = File(...)):
    if not file.filename:
        raise HTTPException(400, "Missing filename")
    content_type = (file.content_type or "").lower()
    if content_type not in config.ALLOWED_MIME_TYPES:
        raise HTTPException(400, "Unsupported file type")

    upload_id = uuid.uuid4().hex
    suffix = Path(file.filename).suffix.lower()[:8]
    temp_path = config.UPLOAD_DIR / f"{upload_id}{suffix}"

    max_bytes = int(config.MAX_UPLOAD_MB * 1024 * 1024)
    written = 0
    with temp_path.open("wb") as f:
        while True:
            chunk = await file.read(1024 * 1024)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                f.close()
                temp_path.unlink(missing_ok=True)
                raise HTTPException(400, f"File exceeds {config.MAX_UPLOAD_MB:g}MB limit")
            f.write(chunk)

    try:
        duration, width, height = probe_info(str(temp_path))
    except (OSError, subprocess.SubprocessError) as e:
        temp_path.unlink(missing_ok=True)
        raise HTTPException(400, f"Probe failed: {e}")

    meta = UploadMeta(
        upload_id=upload_id,
        src_path=temp_path,
        size_bytes=temp_path.stat().st_size,
        content_type=content_type,
        duration_sec=duration,
        width=width,
        height=height,
    )
    UPLOADS[upload_id] = meta
    asyncio.create_task(_expire_upload(upload_id))
    logger.info("Upload %s stored (%s bytes, %.1fs)", upload_id, meta.size_bytes, duration)

    return JSONResponse(
        {
            "ok": True,
            "upload_id": upload_id,
            "asset_url": f"{UPLOAD_SCHEME}{upload_id}",
            "duration_sec": duration,
            "size_bytes": meta.size_bytes,
            "width": width,
            "height": height,
        }
    )


@app.post("/plan")
async def plan(request: Request):
    """Preview the execution plan for an intent + timeline without queueing it."""
    body = await _read_json(request)
    caps = await asyncio.to_thread(detect_capabilities)
    QUEUE.configure(caps)
    out_path = config.OUTPUT_DIR / "preview.mp4"
    try:
        render_plan = build_plan_safely(body.get("request"), body.get("intent"), caps, QUEUE.load(), str(out_path))
    except PlanError as e:
        return JSONResponse({"error": "invalid_request", "detail": str(e)}, status_code=400)
    return JSONResponse({"ok": True, "plan": render_plan.to_dict()})


@app.post("/brain")
async def brain(request: Request):
    body = await _read_json(request)
    brain_input = BrainInput.from_dict(body)
    output = CreativeBrain(brain_input).generate_decisions()
    return JSONResponse(
        {
            "ok": True,
            **output.to_dict(),
            "quick_estimate": estimate_cost_range(
                brain_input.number_of_videos, brain_input.available_api_keys
            ),
        }
    )


@app.post("/jobs")
async def create_job(request: Request):
    body = await _read_json(request)
    caps = await asyncio.to_thread(detect_capabilities)
    QUEUE.configure(caps)

    intent = body.get("intent") if isinstance(body.get("intent"), dict) else {}
    intent = dict(intent, priority=body.get("priority") or intent.get("priority") or "normal")
    parsed = Intent.from_dict(intent)
    priority = effective_priority(parsed.tool, parsed.priority)
    job_id = uuid.uuid4().hex
    out_path = config.OUTPUT_DIR / f"{job_id}.mp4"
    try:
        render_plan = build_plan_safely(body.get("request"), intent, caps, QUEUE.load(), str(out_path))
    except PlanError as e:
        return JSONResponse({"error": "invalid_request", "detail": str(e)}, status_code=400)

    job = JobState(job_id=job_id, plan=render_plan, priority=priority)
    try:
        position = QUEUE.add(job)
    except QueueOverflow as e:
        logger.warning("Rejected job %s: %s", job_id, e)
        return JSONResponse({"error": "queue_overflow", "detail": str(e)}, status_code=429)

    put(job, type="state", status=JobStatus.QUEUED, progress=0.0, message=f"Queued ({position})")
    _dispatch()
    return JSONResponse(
        {
            "ok": True,
            "job_id": job_id,
            "position": position,
            "estimated_wait_sec": QUEUE.estimated_wait_sec(),
            "plan": render_plan.to_dict(),
        }
    )


@app.get("/jobs/{job_id}")
def get_job(job_id: str):
    job = QUEUE.get(job_id)
    if not job:
        raise HTTPException(404, "Unknown job")
    return JSONResponse({**job.to_dict(), "position": QUEUE.position(job_id)})


@app.get("/jobs/{job_id}/logs")
def get_job_logs(job_id: str):
    job = QUEUE.get(job_id)
    if not job:
        raise HTTPException(404, "Unknown job")
    return JSONResponse({"job_id": job_id, "logs": list(job.logs)})


@app.get("/events/{job_id}")
async def events(job_id: str):
    job = QUEUE.get(job_id)
    if not job:
        async def unknown() -> AsyncIterator[bytes]:
            payload = {"type": "state", "status": JobStatus.ERROR, "progress": 0, "message": "Unknown job"}
            yield f"data: {json.dumps(payload)}\n\n".encode()

        return StreamingResponse(unknown(), media_type="text/event-stream")
    return StreamingResponse(sse_stream(job), media_type="text/event-stream")


@app.get("/download/{job_id}")
def download(job_id: str):
    job = QUEUE.get(job_id)
    if not job or job.status != JobStatus.DONE or not job.out_path:
        raise HTTPException(404, "Not ready")
    return JSONResponse({"ok": True, "url": f"{config.PUBLIC_BASE_URL}/media/{job.out_path.name}"})


def release_upload(upload_id: str) -> bool:
    """Drop an upload and its file unless a queued or running job still needs it."""
    url = f"{UPLOAD_SCHEME}{upload_id}"
    for other in QUEUE.jobs.values():
        if other.status in (JobStatus.QUEUED, JobStatus.RUNNING) and url in other.plan.request.asset_urls():
            return False
    meta = UPLOADS.pop(upload_id, None)
    if meta:
        meta.src_path.unlink(missing_ok=True)
    return True


async def _expire_upload(upload_id: str) -> None:
    await asyncio.sleep(config.UPLOAD_TTL_MIN * 60)
    release_upload(upload_id)


async def cleanup_job(job_id: str) -> None:
    job = QUEUE.remove(job_id)
    if not job:
        return
    Path(job.plan.output_path).unlink(missing_ok=True)
    if job.out_path:
        job.out_path.unlink(missing_ok=True)
    for url in job.plan.request.asset_urls():
        if url.startswith(UPLOAD_SCHEME):
            release_upload(url[len(UPLOAD_SCHEME):])


async def _schedule_cleanup(job_id: str) -> None:
    await asyncio.sleep(config.DOWNLOAD_TTL_MIN * 60)
    await cleanup_job(job_id)


# ------------ Worker ------------
def _dispatch() -> None:
    while True:
        job = QUEUE.next_job()
        if job is None:
            return
        asyncio.create_task(_run_slot(job))


async def _run_slot(job: JobState) -> None:
    try:
        await run_job(job)
    finally:
        QUEUE.complete(job.job_id)
        _dispatch()


def download_asset(url: str, dest: Path) -> Path:
    with requests.get(url, stream=True, timeout=config.DOWNLOAD_TIMEOUT) as r:
        r.raise_for_status()
        with dest.open("wb") as f:
            for chunk in r.iter_content(chunk_size=1024 * 1024):
                if chunk:
                    f.write(chunk)
    return dest


async def resolve_assets(job: JobState) -> Dict[str, str]:
    """Map every asset URL in the plan to a local path."""
    mapping: Dict[str, str] = {}
    for i, url in enumerate(job.plan.request.asset_urls()):
        if url.startswith(UPLOAD_SCHEME):
            meta = UPLOADS.get(url[len(UPLOAD_SCHEME):])
            if not meta or not meta.src_path.exists():
                raise RenderError("SOURCE_NOT_FOUND", f"Unknown upload: {url}")
            mapping[url] = str(meta.src_path)
        elif url.startswith(("http://", "https://")):
            suffix = Path(url.split("?")[0]).suffix[:8]
            dest = config.TEMP_DIR / f"{job.job_id}_{i}{suffix}"
            _log(job, f"Downloading asset {url}")
            try:
                await asyncio.to_thread(download_asset, url, dest)
            except requests.RequestException as e:
                dest.unlink(missing_ok=True)
                raise RenderError("DOWNLOAD_FAILED", f"Failed to download {url}: {e}")
            job.temp_files.append(dest)
            mapping[url] = str(dest)
        else:
            local = Path(url).resolve()
            roots = (config.UPLOAD_DIR.resolve(), config.TEMP_DIR.resolve())
            if not any(local.is_relative_to(root) for root in roots):
                raise RenderError("SOURCE_NOT_ALLOWED", f"Local sources must live in the upload area: {url}")
            if not local.exists():
                raise RenderError("SOURCE_NOT_FOUND", f"Source file not found: {url}")
            mapping[url] = str(local)
    return mapping


def percent_from_out_time(line: str, duration_sec: float) -> Optional[float]:
    m = re.match(r"out_time_(?:ms|us)=(\d+)", line.strip())
    if m and duration_sec > 0:
        seconds = int(m.group(1)) / 1_000_000.0
        return min(99.0, seconds / duration_sec * 100.0)
    return None


async def run_ffmpeg(job: JobState, args: List[str], duration_sec: float, base: float, span: float) -> None:
    cmd = [config.FFMPEG_BIN, "-hide_banner", "-nostats", "-loglevel", "error", "-progress", "pipe:1", *args]
    _log(job, "ffmpeg " + " ".join(shlex.quote(a) for a in args))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise RenderError("FFMPEG_SPAWN_ERROR", f"Could not start ffmpeg: {e}")

    async def read_progress() -> None:
        last_emit = 0.0
        while True:
            line = await proc.stdout.readline()
            if not line:
                break
            pct = percent_from_out_time(line.decode("utf-8", "ignore"), duration_sec)
            if pct is None:
                continue
            overall = base + pct * span / 100.0
            if overall - last_emit >= 1.0:
                job.progress = overall
                put(job, type="progress", progress=round(overall, 1), status=JobStatus.RUNNING, message="Rendering…")
                last_emit = overall

    try:
        _, stderr = await asyncio.wait_for(
            asyncio.gather(read_progress(), proc.stderr.read()), timeout=config.MAX_RENDER_TIME
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise RenderError("TIMEOUT_ERROR", f"FFmpeg timeout after {config.MAX_RENDER_TIME:g}s")

    rc = await proc.wait()
    if rc != 0:
        err_text = stderr.decode("utf-8", "ignore")
        _log(job, err_text.strip())
        raise RenderError.from_stderr(err_text, rc)


async def render_with_fallback(job: JobState, plan: RenderPlan) -> str:
    """Try each encoder in the decision's fallback chain; returns the one that worked."""
    chain = plan.decision.fallback_chain or [plan.encoder]
    for n, encoder in enumerate(chain):
        attempt = plan if encoder == plan.encoder else with_encoder(plan, encoder)
        span = 100.0 / len(attempt.passes)
        try:
            for i, args in enumerate(attempt.passes):
                await run_ffmpeg(job, args, attempt.duration_sec, i * span, span)
            return encoder
        except RenderError as e:
            if n == len(chain) - 1:
                raise
            logger.warning("Job %s: %s render failed (%s); falling back", job.job_id, encoder, e.code)
            _log(job, f"[Fallback] {encoder} failed: {e.message}")
            put(job, type="state", status=JobStatus.RUNNING, progress=job.progress,
                message=f"Retrying with {chain[n + 1]}…")
    raise RenderError("NO_ENCODER", "No encoder available")


async def run_job(job: JobState):
    job.status = JobStatus.RUNNING
    job.started_at = time.time()
    put(job, type="state", status=JobStatus.RUNNING, progress=0.0, message="Starting…")

    try:
        mapping = await resolve_assets(job)
        out_path = Path(job.plan.output_path)
        out_path.unlink(missing_ok=True)
        local = compile_render_plan(job.plan.request.with_assets(mapping), job.plan.decision, str(out_path))
        job.temp_files.extend(local.pass_log_files())

        job.encoder_used = await render_with_fallback(job, local)

        if not out_path.exists() or out_path.stat().st_size <= 0:
            raise RenderError("EMPTY_OUTPUT", "FFmpeg completed but output file is missing or empty")

        job.progress = 100.0
        job.status = JobStatus.DONE
        job.out_path = out_path
        job.finished_at = time.time()
        dl_url = f"{config.PUBLIC_BASE_URL}/media/{out_path.name}"
        logger.info("Job %s done with %s", job.job_id, job.encoder_used)
        put(job, type="state", status=JobStatus.DONE, progress=100.0, message="Complete", download_url=dl_url)

    except (RenderError, PlanError) as e:
        err = e.to_dict() if isinstance(e, RenderError) else {"code": "PLAN_ERROR", "message": str(e), "details": None}
        logger.error("Job %s failed: %s", job.job_id, err["message"])
        _fail(job, err)
    except Exception as e:
        logger.exception("Job %s crashed", job.job_id)
        _fail(job, {"code": "EXECUTION_ERROR", "message": str(e), "details": None})
    finally:
        for path in job.temp_files:
            path.unlink(missing_ok=True)
        job.temp_files.clear()
        # finished and failed jobs alike leave the queue after the download TTL
        asyncio.create_task(_schedule_cleanup(job.job_id))


def _fail(job: JobState, err: Dict[str, Any]) -> None:
    job.status = JobStatus.ERROR
    job.error = err
    job.finished_at = time.time()
    put(job, type="state", status=JobStatus.ERROR, progress=job.progress, message=err["message"], code=err["code"])


# ------------ Health ------------
@app.get("/health")
def health():
    caps = detect_capabilities()
    QUEUE.configure(caps)
    return {
        "ok": caps.ffmpeg_available,
        "mode": "self-hosted",
        "ffmpeg": {
            "available": caps.ffmpeg_available,
            "version": caps.ffmpeg_version,
            "path": caps.ffmpeg_path,
            "encoders": {"cpu": "libx264", "gpu": caps.best_encoder if caps.hardware_encoding else None},
            "gpu_acceleration": caps.gpu_acceleration,
        },
        "gpu": caps.to_dict()["gpu"],
        "storage": storage_info(config.OUTPUT_DIR),
        "queue": QUEUE.stats(),
    }


@app.get("/healthz")
def healthz():
    return {"ok": True}
