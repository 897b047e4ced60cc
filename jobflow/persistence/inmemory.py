"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Dict

from ..errors import JobNotFoundError
from ..models import Job
from .repository import MutationFn, WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store jobs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Jobs are copied on the way in and out
    so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    async def create_job(self, job: Job) -> None:
        if job.id in self._jobs:
            raise ValueError(f"Job {job.id} already exists")
        self._jobs[job.id] = job.model_copy(deep=True)
        self._locks[job.id] = asyncio.Lock()

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def apply_job_mutation(self, job_id: str, mutation_fn: MutationFn) -> Job:
        lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFoundError(job_id)
        async with lock:
            current = self._jobs[job_id]
            updated = mutation_fn(current.model_copy(deep=True))
            self._jobs[job_id] = updated.model_copy(deep=True)
            return updated

    async def list_jobs(self) -> list[Job]:
        return [job.model_copy(deep=True) for job in self._jobs.values()]
