"""Job storage contract and the in-memory backend.

A job record only exists while it is queued or processing. Marking a job
succeeded or failed deletes the record; the outcome is reported through
the storage's ``events`` channel once the change is committed.

``requeue_orphaned`` cannot tell a crashed worker's job from one a live
worker is running. Call it at startup, before any processor polls.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .errors import InvalidJobState, MalformedJob, PayloadDecodeError, UnknownJobType, UnknownPayloadType
from .events import JobEvents
from .models import PROCESSING, QUEUED, STATES, JobRecord, JobTask
from .registry import JobRegistry
from .utils import now_iso

logger = logging.getLogger(__name__)


class JobStorage(ABC):
    def __init__(self, registry: JobRegistry, events: Optional[JobEvents] = None):
        self.registry = registry
        self.events = events if events is not None else JobEvents()

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def init(self) -> None:
        """Prepare the medium. Faults here are fatal to the caller."""

    async def close(self) -> None:
        self.events.close()

    @abstractmethod
    async def enqueue(self, job_type: str, data: Any) -> JobTask:
        """Persist a queued job and publish ``enqueued`` after the write commits."""

    @abstractmethod
    async def dequeue(self) -> Optional[JobTask]:
        """Claim the oldest queued job, or return None when nothing is queued."""

    @abstractmethod
    async def mark_succeeded(self, job_id: int) -> None:
        ...

    @abstractmethod
    async def mark_failed(self, job_id: int, error: BaseException) -> None:
        ...

    @abstractmethod
    async def list_jobs(self, job_type: Optional[str] = None) -> List[JobTask]:
        """Queued and processing jobs ordered by queued_on."""

    @abstractmethod
    async def requeue_orphaned(self) -> int:
        """Move every processing job back to queued. Returns how many moved."""

    @abstractmethod
    async def repair_corrupt(self) -> List[int]:
        """Delete records that cannot be materialized. Returns their ids."""

    @abstractmethod
    async def counts(self) -> Dict[str, int]:
        ...

    # ---------- shared helpers ----------
    def _encode(self, job_type: str, data: Any):
        payload = self.registry.payload_type_for(job_type, data)
        return payload.describe(), payload.encode(data)

    def _materialize(self, job_id: int, job_type: str, job_data_type: str, job_data: str) -> JobTask:
        try:
            self.registry.resolve(job_type)
            payload = self.registry.resolve_payload(job_data_type)
            data = payload.decode(job_data)
        except (UnknownJobType, UnknownPayloadType, PayloadDecodeError) as e:
            raise MalformedJob(job_id, str(e)) from e
        return JobTask(id=job_id, job_type=job_type, data=data)

    @staticmethod
    def _check_processing(job_id: int, status: Optional[str], outcome: str) -> None:
        if status is None:
            raise InvalidJobState(job_id, f"Invalid job id {job_id}")
        if status != PROCESSING:
            raise InvalidJobState(
                job_id,
                f"Can't mark job {job_id} as {outcome} because it wasn't marked as processing.",
            )


class MemoryJobStorage(JobStorage):
    """Process-local storage. One lock guards the whole record list."""

    def __init__(self, registry: JobRegistry, events: Optional[JobEvents] = None):
        super().__init__(registry, events)
        self._records: List[JobRecord] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def _materialize_record(self, record: JobRecord) -> JobTask:
        return self._materialize(record.id, record.job_type, record.job_data_type, record.job_data)

    def _find(self, job_id: int) -> Optional[JobRecord]:
        for record in self._records:
            if record.id == job_id:
                return record
        return None

    def _ordered(self) -> List[JobRecord]:
        return sorted(self._records, key=lambda r: (r.queued_on, r.id))

    async def enqueue(self, job_type: str, data: Any) -> JobTask:
        data_type, encoded = self._encode(job_type, data)
        with self._lock:
            record = JobRecord(
                id=next(self._ids),
                job_type=job_type,
                job_data_type=data_type,
                job_data=encoded,
                queued_on=now_iso(),
            )
            self._records.append(record)
        logger.debug("enqueued job %s (%s)", record.id, job_type)

        job = JobTask(id=record.id, job_type=job_type, data=data)
        await self.events.publish_enqueued(job)
        return job

    async def dequeue(self) -> Optional[JobTask]:
        with self._lock:
            for record in self._ordered():
                if record.status != QUEUED:
                    continue
                # raises MalformedJob before the claim; the record stays queued
                job = self._materialize_record(record)
                record.status = PROCESSING
                logger.debug("claimed job %s", record.id)
                return job
        return None

    async def mark_succeeded(self, job_id: int) -> None:
        job = self._remove_processing(job_id, "succeeded")
        await self.events.publish_succeeded(job)

    async def mark_failed(self, job_id: int, error: BaseException) -> None:
        job = self._remove_processing(job_id, "failed")
        await self.events.publish_failed(job, error)

    def _remove_processing(self, job_id: int, outcome: str) -> JobTask:
        with self._lock:
            record = self._find(job_id)
            self._check_processing(job_id, record.status if record else None, outcome)
            job = self._materialize_record(record)
            self._records.remove(record)
        return job

    async def list_jobs(self, job_type: Optional[str] = None) -> List[JobTask]:
        with self._lock:
            return [
                self._materialize_record(r)
                for r in self._ordered()
                if job_type is None or r.job_type == job_type
            ]

    async def requeue_orphaned(self) -> int:
        moved = 0
        with self._lock:
            for record in self._records:
                if record.status == PROCESSING:
                    record.status = QUEUED
                    moved += 1
        if moved:
            logger.warning("re-queued %d orphaned job(s)", moved)
        return moved

    async def repair_corrupt(self) -> List[int]:
        removed = []
        with self._lock:
            for record in list(self._records):
                try:
                    self._materialize_record(record)
                except MalformedJob as e:
                    logger.error("Detected problematic job %s, deleting: %s", record.id, e.reason)
                    self._records.remove(record)
                    removed.append(record.id)
        return removed

    async def counts(self) -> Dict[str, int]:
        out = {s: 0 for s in STATES}
        with self._lock:
            for record in self._records:
                out[record.status] += 1
        return out
