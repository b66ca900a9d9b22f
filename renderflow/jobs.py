# renderflow/jobs.py
from __future__ import annotations

import asyncio
import itertools
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .capabilities import Capabilities
from .compiler import RenderPlan
from .decision import Load
from .log import setup_logger

logger = setup_logger(__name__)

PRIORITY_VALUES = {"high": 100, "normal": 50, "low": 10}
AVG_RENDER_SEC = 45


class JobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class QueueOverflow(RuntimeError):
    pass


@dataclass
class JobState:
    job_id: str
    plan: RenderPlan
    priority: str = "normal"
    status: str = JobStatus.QUEUED
    progress: float = 0.0
    message: str = ""
    encoder_used: Optional[str] = None
    out_path: Optional[Path] = None
    error: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    temp_files: List[Path] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    q: asyncio.Queue = field(default_factory=asyncio.Queue)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "progress": round(self.progress, 1),
            "message": self.message,
            "priority": self.priority,
            "encoder_used": self.encoder_used,
            "error": self.error,
            "estimate": self.plan.to_dict()["estimate"],
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass(order=True)
class _Pending:
    sort_key: tuple
    job_id: str = field(compare=False)


class JobQueue:
    """Priority queue of render jobs with concurrency sized from capabilities."""

    def __init__(self, max_depth: int = 100):
        self.max_depth = max_depth
        self.jobs: Dict[str, JobState] = {}
        self.pending: List[_Pending] = []
        self.active: set = set()
        self.gpu_slots = 1
        self.cpu_slots = 1
        self.use_gpu = False
        self.last_processed: Optional[float] = None
        self._seq = itertools.count()

    def configure(self, caps: Capabilities) -> None:
        slots = (max(1, caps.gpu.count), max(1, caps.cpu_cores // 4), caps.hardware_encoding)
        if slots != (self.gpu_slots, self.cpu_slots, self.use_gpu):
            logger.info("Queue concurrency: gpu=%s cpu=%s", slots[0], slots[1])
        self.gpu_slots, self.cpu_slots, self.use_gpu = slots

    @property
    def capacity(self) -> int:
        return self.gpu_slots if self.use_gpu else self.cpu_slots

    @staticmethod
    def priority_value(priority: str) -> int:
        return PRIORITY_VALUES.get((priority or "").lower(), PRIORITY_VALUES["normal"])

    def add(self, job: JobState) -> int:
        """Queue ``job``; returns its 1-based position."""
        if len(self.pending) >= self.max_depth:
            raise QueueOverflow("Server is currently overloaded. Please try again later.")
        self.jobs[job.job_id] = job
        # higher priority first, then FIFO
        entry = _Pending((-self.priority_value(job.priority), next(self._seq)), job.job_id)
        self.pending.append(entry)
        self.pending.sort()
        position = self.pending.index(entry) + 1
        logger.info("Job %s queued at %s/%s", job.job_id, position, len(self.pending))
        return position

    def next_job(self) -> Optional[JobState]:
        if len(self.active) >= self.capacity or not self.pending:
            return None
        entry = self.pending.pop(0)
        self.active.add(entry.job_id)
        return self.jobs.get(entry.job_id)

    def complete(self, job_id: str) -> None:
        self.active.discard(job_id)
        self.last_processed = time.time()

    def remove(self, job_id: str) -> Optional[JobState]:
        self.pending = [p for p in self.pending if p.job_id != job_id]
        self.active.discard(job_id)
        return self.jobs.pop(job_id, None)

    def get(self, job_id: str) -> Optional[JobState]:
        return self.jobs.get(job_id)

    def position(self, job_id: str) -> Optional[int]:
        for i, p in enumerate(self.pending):
            if p.job_id == job_id:
                return i + 1
        return None

    def estimated_wait_sec(self) -> int:
        if not self.pending:
            return 0
        return math.ceil(len(self.pending) * AVG_RENDER_SEC / self.capacity)

    def load(self) -> Load:
        return Load(
            active=len(self.active),
            waiting=len(self.pending),
            capacity=self.capacity,
            max_depth=self.max_depth,
        )

    def stats(self) -> Dict[str, Any]:
        states = [j.status for j in self.jobs.values()]
        return {
            "active": len(self.active),
            "waiting": len(self.pending),
            "capacity": self.capacity,
            "total_jobs": len(self.jobs),
            "completed": states.count(JobStatus.DONE),
            "failed": states.count(JobStatus.ERROR),
            "overloaded": self.load().overloaded,
            "estimated_wait_sec": self.estimated_wait_sec(),
            "last_processed": self.last_processed,
        }
