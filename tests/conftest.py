"""Shared test fixtures."""

from dataclasses import dataclass
from typing import Tuple

import pytest

from jobkit.jobs import Job
from jobkit.registry import JobRegistry
from jobkit.repository import SqliteJobStorage
from jobkit.storage import MemoryJobStorage


@dataclass
class SampleData:
    value: int = 0
    throw: bool = False
    message: str = ""


@dataclass
class NestedData:
    inner: SampleData
    tags: Tuple[str, ...] = ()


class SampleJob(Job):
    runs = []
    closed = 0

    async def run(self, data: SampleData) -> None:
        if data.throw:
            raise RuntimeError(data.message)
        SampleJob.runs.append(data.value)

    def close(self) -> None:
        SampleJob.closed += 1


class EventRecorder:
    def __init__(self, events):
        self.enqueued = []
        self.succeeded = []
        self.failed = []
        events.enqueued.subscribe(self.enqueued.append)
        events.succeeded.subscribe(self.succeeded.append)
        events.failed.subscribe(self.failed.append)


@pytest.fixture
def registry():
    SampleJob.runs = []
    SampleJob.closed = 0
    r = JobRegistry()
    r.register("sample", SampleJob, SampleData)
    r.register("other", SampleJob, SampleData)
    return r


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture(params=["memory", "sqlite"])
async def storage(request, registry, db_path):
    """Each contract test runs against both backends."""
    if request.param == "memory":
        s = MemoryJobStorage(registry)
    else:
        s = SqliteJobStorage(registry, path=db_path)
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def recorder(storage):
    return EventRecorder(storage.events)
