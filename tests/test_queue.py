import pytest

from renderflow.capabilities import Capabilities, GpuInfo
from renderflow.compiler import RenderRequest, Segment, compile_render_plan
from renderflow.decision import default_decision
from renderflow.jobs import JobQueue, JobState, JobStatus, QueueOverflow


def make_job(job_id, priority="normal"):
    plan = compile_render_plan(
        RenderRequest(timeline=[Segment("a.mp4", 0, 10000)]), default_decision(), f"{job_id}.mp4"
    )
    return JobState(job_id=job_id, plan=plan, priority=priority)


@pytest.mark.asyncio
async def test_priority_then_fifo():
    q = JobQueue()
    q.configure(Capabilities(cpu_cores=16))
    assert q.add(make_job("n1")) == 1
    assert q.add(make_job("l1", "low")) == 2
    assert q.add(make_job("h1", "high")) == 1
    assert q.add(make_job("n2")) == 3
    assert q.position("l1") == 4

    order = []
    while True:
        job = q.next_job()
        if job is None:
            break
        order.append(job.job_id)
        q.complete(job.job_id)
    assert order == ["h1", "n1", "n2", "l1"]
    assert q.last_processed is not None


@pytest.mark.asyncio
async def test_capacity_limits_active_jobs():
    q = JobQueue()
    q.configure(Capabilities(cpu_cores=8))
    assert q.capacity == 2
    for i in range(3):
        q.add(make_job(f"j{i}"))
    assert q.next_job() is not None
    assert q.next_job() is not None
    assert q.next_job() is None
    assert q.load().active == 2 and q.load().waiting == 1


@pytest.mark.asyncio
async def test_gpu_capacity():
    q = JobQueue()
    q.configure(
        Capabilities(best_encoder="h264_nvenc", gpu=GpuInfo(available=True, count=3), cpu_cores=4)
    )
    assert q.capacity == 3


@pytest.mark.asyncio
async def test_overflow():
    q = JobQueue(max_depth=2)
    q.add(make_job("a"))
    q.add(make_job("b"))
    with pytest.raises(QueueOverflow):
        q.add(make_job("c"))
    assert q.get("c") is None


@pytest.mark.asyncio
async def test_wait_estimate_and_stats():
    q = JobQueue(max_depth=10)
    assert q.estimated_wait_sec() == 0
    q.add(make_job("a"))
    q.add(make_job("b"))
    assert q.estimated_wait_sec() == 90

    job = q.next_job()
    job.status = JobStatus.DONE
    q.complete(job.job_id)
    stats = q.stats()
    assert stats["waiting"] == 1
    assert stats["completed"] == 1
    assert stats["total_jobs"] == 2
    assert stats["overloaded"] is False
    assert stats["estimated_wait_sec"] == 45


@pytest.mark.asyncio
async def test_remove():
    q = JobQueue()
    q.add(make_job("a"))
    assert q.remove("a").job_id == "a"
    assert q.pending == []
    assert q.remove("a") is None
