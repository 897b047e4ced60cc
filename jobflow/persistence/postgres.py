"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from ..errors import JobNotFoundError, StorageUnavailableError
from ..models import Job
from .repository import MutationFn, WorkflowRepository

logger = logging.getLogger(__name__)

_INFRA_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist jobs using PostgreSQL, one JSONB document per row."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                document JSONB NOT NULL,
                last_updated TIMESTAMPTZ NOT NULL
            )
            """
        )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except _INFRA_ERRORS as exc:
            logger.error(f"Cannot connect to PostgreSQL: {exc}")
            raise StorageUnavailableError(str(exc)) from exc
        try:
            yield conn
        except asyncpg.UniqueViolationError:
            raise
        except _INFRA_ERRORS as exc:
            logger.error(f"PostgreSQL operation failed: {exc}")
            raise StorageUnavailableError(str(exc)) from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_job(self, job: Job) -> None:
        try:
            async with self._connection() as conn:
                await conn.execute(
                    "INSERT INTO jobs (id, status, document, last_updated) VALUES ($1, $2, $3::jsonb, $4)",
                    job.id,
                    job.status.value,
                    job.to_json(),
                    job.last_updated,
                )
        except asyncpg.UniqueViolationError as exc:
            raise ValueError(f"Job {job.id} already exists") from exc

    async def get_job(self, job_id: str) -> Job | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT document FROM jobs WHERE id = $1", job_id)
        return Job.from_json(row["document"]) if row else None

    async def apply_job_mutation(self, job_id: str, mutation_fn: MutationFn) -> Job:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT document FROM jobs WHERE id = $1 FOR UPDATE", job_id
                )
                if row is None:
                    raise JobNotFoundError(job_id)
                updated = mutation_fn(Job.from_json(row["document"]))
                await conn.execute(
                    "UPDATE jobs SET status = $1, document = $2::jsonb, last_updated = $3 WHERE id = $4",
                    updated.status.value,
                    updated.to_json(),
                    updated.last_updated,
                    job_id,
                )
        return updated

    async def list_jobs(self) -> list[Job]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT document FROM jobs ORDER BY last_updated DESC")
        return [Job.from_json(r["document"]) for r in rows]
