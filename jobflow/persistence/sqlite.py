"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path

from ..errors import JobNotFoundError, StorageUnavailableError
from ..models import Job
from .repository import MutationFn, WorkflowRepository

logger = logging.getLogger(__name__)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist jobs using SQLite, one JSON document per row."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            # autocommit mode; transactions are opened explicitly
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Cannot open SQLite database {self.db_path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                document TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _insert(self, job: Job) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO jobs (id, status, document, last_updated) VALUES (?, ?, ?, ?)",
                    (job.id, job.status.value, job.to_json(), job.last_updated.isoformat()),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Job {job.id} already exists") from exc

    def _fetchone(self, job_id: str) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute("SELECT document FROM jobs WHERE id = ?", (job_id,))
            return cur.fetchone()

    def _fetchall(self) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute("SELECT document FROM jobs ORDER BY last_updated DESC")
            return cur.fetchall()

    def _mutate(self, job_id: str, mutation_fn: MutationFn) -> Job:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT document FROM jobs WHERE id = ?", (job_id,)
                ).fetchone()
                if row is None:
                    raise JobNotFoundError(job_id)
                updated = mutation_fn(Job.from_json(row["document"]))
                self._conn.execute(
                    "UPDATE jobs SET status = ?, document = ?, last_updated = ? WHERE id = ?",
                    (
                        updated.status.value,
                        updated.to_json(),
                        updated.last_updated.isoformat(),
                        job_id,
                    ),
                )
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            return updated

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            logger.error(f"SQLite operation failed on {self.db_path}: {exc}")
            raise StorageUnavailableError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Repository API
    async def create_job(self, job: Job) -> None:
        await self._run(self._insert, job)

    async def get_job(self, job_id: str) -> Job | None:
        row = await self._run(self._fetchone, job_id)
        return Job.from_json(row["document"]) if row else None

    async def apply_job_mutation(self, job_id: str, mutation_fn: MutationFn) -> Job:
        return await self._run(self._mutate, job_id, mutation_fn)

    async def list_jobs(self) -> list[Job]:
        rows = await self._run(self._fetchall)
        return [Job.from_json(row["document"]) for row in rows]

    def close(self) -> None:
        self._conn.close()
