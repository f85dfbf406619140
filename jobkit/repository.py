import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from .config import DB_FILE, validate_config_value
from .db import connect_db, init_db
from .errors import MalformedJob, StorageFault
from .events import JobEvents
from .models import PROCESSING, QUEUED, STATES, JobTask
from .registry import JobRegistry
from .storage import JobStorage
from .utils import now_iso

logger = logging.getLogger(__name__)


class SqliteJobStorage(JobStorage):
    """Durable job storage in a SQLite file.

    Every mutation runs in its own ``BEGIN IMMEDIATE`` transaction, so the
    database write lock serializes concurrent claimers across connections
    and processes. Events are published only after ``COMMIT``.
    """

    def __init__(
        self,
        registry: JobRegistry,
        events: Optional[JobEvents] = None,
        path: str = DB_FILE,
    ):
        super().__init__(registry, events)
        self.path = path

    async def init(self) -> None:
        await init_db(self.path)

    @asynccontextmanager
    async def _connection(self):
        try:
            async with connect_db(self.path) as conn:
                yield conn
        except sqlite3.Error as e:
            raise StorageFault(f"DB error on {self.path!r}: {e}") from e

    @asynccontextmanager
    async def _transaction(self):
        async with self._connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    def _materialize_row(self, row) -> JobTask:
        return self._materialize(row["id"], row["job_type"], row["job_data_type"], row["job_data"])

    # ---------- Jobs: enqueue / claim / complete ----------
    async def enqueue(self, job_type: str, data: Any) -> JobTask:
        data_type, encoded = self._encode(job_type, data)
        async with self._transaction() as conn:
            cur = await conn.execute(
                """INSERT INTO jobs (queued_on, status, job_type, job_data_type, job_data)
                   VALUES (?, ?, ?, ?, ?)""",
                (now_iso(), QUEUED, job_type, data_type, encoded),
            )
            job_id = cur.lastrowid
        logger.debug("enqueued job %s (%s)", job_id, job_type)

        job = JobTask(id=job_id, job_type=job_type, data=data)
        await self.events.publish_enqueued(job)
        return job

    async def dequeue(self) -> Optional[JobTask]:
        async with self._transaction() as conn:
            cur = await conn.execute(
                """SELECT * FROM jobs
                   WHERE status=?
                   ORDER BY queued_on ASC, id ASC
                   LIMIT 1""",
                (QUEUED,),
            )
            row = await cur.fetchone()
            if not row:
                return None
            # MalformedJob rolls the claim back; the row stays queued
            job = self._materialize_row(row)
            updated = await conn.execute(
                "UPDATE jobs SET status=? WHERE id=? AND status=?",
                (PROCESSING, row["id"], QUEUED),
            )
            if updated.rowcount != 1:
                return None
        logger.debug("claimed job %s", job.id)
        return job

    async def mark_succeeded(self, job_id: int) -> None:
        job = await self._delete_processing(job_id, "succeeded")
        await self.events.publish_succeeded(job)

    async def mark_failed(self, job_id: int, error: BaseException) -> None:
        job = await self._delete_processing(job_id, "failed")
        await self.events.publish_failed(job, error)

    async def _delete_processing(self, job_id: int, outcome: str) -> JobTask:
        async with self._transaction() as conn:
            cur = await conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,))
            row = await cur.fetchone()
            self._check_processing(job_id, row["status"] if row else None, outcome)
            job = self._materialize_row(row)
            await conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
        return job

    # ---------- Recovery ----------
    async def requeue_orphaned(self) -> int:
        async with self._transaction() as conn:
            cur = await conn.execute(
                "UPDATE jobs SET status=? WHERE status=?", (QUEUED, PROCESSING)
            )
            moved = cur.rowcount
        if moved:
            logger.warning("re-queued %d orphaned job(s)", moved)
        return moved

    async def repair_corrupt(self) -> List[int]:
        removed = []
        async with self._transaction() as conn:
            cur = await conn.execute("SELECT * FROM jobs ORDER BY id")
            for row in await cur.fetchall():
                try:
                    self._materialize_row(row)
                except MalformedJob as e:
                    logger.error("Detected problematic job %s, deleting: %s", row["id"], e.reason)
                    await conn.execute("DELETE FROM jobs WHERE id=?", (row["id"],))
                    removed.append(row["id"])
        return removed

    # ---------- Queries ----------
    async def list_jobs(self, job_type: Optional[str] = None) -> List[JobTask]:
        async with self._connection() as conn:
            if job_type is not None:
                cur = await conn.execute(
                    "SELECT * FROM jobs WHERE job_type=? ORDER BY queued_on ASC, id ASC",
                    (job_type,),
                )
            else:
                cur = await conn.execute("SELECT * FROM jobs ORDER BY queued_on ASC, id ASC")
            rows = await cur.fetchall()
        return [self._materialize_row(r) for r in rows]

    async def counts(self) -> Dict[str, int]:
        out = {s: 0 for s in STATES}
        async with self._connection() as conn:
            cur = await conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status")
            for r in await cur.fetchall():
                out[r["status"]] = r["c"]
        return out

    # ---------- Config ----------
    async def get_config(self) -> Dict[str, str]:
        async with self._connection() as conn:
            cur = await conn.execute("SELECT key, value FROM config")
            return {r["key"]: r["value"] for r in await cur.fetchall()}

    async def set_config(self, key: str, value) -> None:
        value = validate_config_value(key, value)
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT INTO config(key,value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
