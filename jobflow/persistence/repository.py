"""Repository abstraction for job persistence."""

from __future__ import annotations

from typing import Callable, Protocol

from ..models import Job

MutationFn = Callable[[Job], Job]


class WorkflowRepository(Protocol):
    """Protocol for job persistence backends.

    The whole :class:`~jobflow.models.Job` is the unit of storage. Writers go
    through :meth:`apply_job_mutation`, which serializes access per job so a
    decision is always computed against the state being replaced.
    """

    async def create_job(self, job: Job) -> None:
        """Persist a new job. Raises ``ValueError`` if the id is taken."""

    async def get_job(self, job_id: str) -> Job | None:
        """Retrieve a job by id."""

    async def apply_job_mutation(self, job_id: str, mutation_fn: MutationFn) -> Job:
        """Read, mutate and write a job atomically.

        ``mutation_fn`` receives a private copy of the current job and returns
        the job to store. If it raises, nothing is written and the exception
        propagates. Raises :class:`~jobflow.errors.JobNotFoundError` for an
        unknown id.
        """

    async def list_jobs(self) -> list[Job]:
        """Return all persisted jobs."""
