# FILE: coverpages/services/job_registry.py
"""
Background acquisition jobs, keyed by upload id

At most one job runs per upload id; a repeated request joins the running
job instead of starting a second acquisition.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from uuid import uuid4

logger = logging.getLogger(__name__)


@dataclass
class AcquisitionJob:
    upload_id: str
    job_id: str = field(default_factory=lambda: str(uuid4()))
    status: str = "queued"  # queued | running | success | error
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())
    result: Optional[Any] = None
    error: Optional[str] = None
    task: Optional["asyncio.Task[Any]"] = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()


class AcquisitionJobRegistry:
    def __init__(self) -> None:
        self._jobs: Dict[str, AcquisitionJob] = {}

    def get_job(self, upload_id: str) -> Optional[AcquisitionJob]:
        return self._jobs.get(upload_id)

    def active_job(self, upload_id: str) -> Optional[AcquisitionJob]:
        job = self._jobs.get(upload_id)
        if job is not None and job.task is not None and not job.task.done():
            return job
        return None

    def start(self, upload_id: str, factory: Callable[[], Awaitable[Any]]) -> Tuple[AcquisitionJob, bool]:
        """Start a job unless one is running; returns (job, created)"""
        active = self.active_job(upload_id)
        if active is not None:
            logger.info(f"[{upload_id}] Joining running job {active.job_id}")
            return active, False

        job = AcquisitionJob(upload_id=upload_id)
        self._jobs[upload_id] = job
        job.task = asyncio.create_task(self._run(job, factory))
        logger.info(f"[{upload_id}] Started job {job.job_id}")
        return job, True

    async def _run(self, job: AcquisitionJob, factory: Callable[[], Awaitable[Any]]) -> Any:
        self.set_status(job.upload_id, "running")
        try:
            result = await factory()
        except Exception as e:
            logger.error(f"[{job.upload_id}] Job {job.job_id} failed: {e}", exc_info=True)
            self.fail(job.upload_id, str(e))
            return None
        self.complete(job.upload_id, result)
        return result

    def set_status(self, upload_id: str, status: str) -> None:
        job = self.get_job(upload_id)
        if not job:
            return
        job.status = status
        job.updated_at = time.time()

    def complete(self, upload_id: str, result: Any) -> None:
        job = self.get_job(upload_id)
        if not job:
            return
        job.status = "success"
        job.result = result
        job.updated_at = time.time()

    def fail(self, upload_id: str, error: str) -> None:
        job = self.get_job(upload_id)
        if not job:
            return
        job.status = "error"
        job.error = error
        job.updated_at = time.time()
