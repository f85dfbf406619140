"""Job storage contract, run against the memory and SQLite backends."""

import asyncio

import pytest

from conftest import NestedData, SampleData
from jobkit.errors import InvalidJobState, MalformedJob, SubscriberError, UnknownJobType


@pytest.mark.asyncio
async def test_enqueue_and_dequeue_jobs(storage, recorder):
    await storage.enqueue("sample", SampleData(value=2))
    assert len(recorder.enqueued) == 1
    assert recorder.enqueued[0].job.data.value == 2

    await storage.enqueue("sample", SampleData(value=3))
    assert len(recorder.enqueued) == 2
    assert recorder.enqueued[1].job.data.value == 3

    job1 = await storage.dequeue()
    assert isinstance(job1.data, SampleData)
    assert job1.data.value == 2
    job2 = await storage.dequeue()
    assert job2.data.value == 3
    assert await storage.dequeue() is None


@pytest.mark.asyncio
async def test_dequeue_round_trips_payload(storage):
    data = SampleData(value=7, throw=True, message="hello")
    queued = await storage.enqueue("sample", data)

    job = await storage.dequeue()
    assert job.id == queued.id
    assert job.job_type == "sample"
    assert job.data == data


@pytest.mark.asyncio
async def test_nested_payloads_come_back_as_dataclasses(storage, registry):
    registry.register("nested", lambda: None, NestedData)
    data = NestedData(inner=SampleData(value=5, message="in"), tags=("x", "y"))
    await storage.enqueue("nested", data)

    job = await storage.dequeue()
    assert job.data == data
    assert isinstance(job.data.inner, SampleData)
    assert job.data.tags == ("x", "y")


@pytest.mark.asyncio
async def test_dequeue_is_fifo(storage):
    for i in range(15):
        await storage.enqueue("sample", SampleData(value=i))

    values = []
    while (job := await storage.dequeue()) is not None:
        values.append(job.data.value)

    assert values == list(range(15))


@pytest.mark.asyncio
async def test_ids_are_unique_and_increasing(storage):
    ids = [(await storage.enqueue("sample", SampleData(value=i))).id for i in range(5)]
    assert ids == sorted(set(ids))


@pytest.mark.asyncio
async def test_dequeue_never_hands_out_a_job_twice(storage):
    await storage.enqueue("sample", SampleData(value=1))
    await storage.enqueue("sample", SampleData(value=2))

    seen = [(await storage.dequeue()).id, (await storage.dequeue()).id]
    assert len(set(seen)) == 2
    assert await storage.dequeue() is None


@pytest.mark.asyncio
async def test_concurrent_dequeue_claims_each_job_once(storage):
    for i in range(5):
        await storage.enqueue("sample", SampleData(value=i))

    results = await asyncio.gather(*(storage.dequeue() for _ in range(20)))
    claimed = [job.id for job in results if job is not None]

    assert len(claimed) == 5
    assert len(set(claimed)) == 5
    assert await storage.counts() == {"queued": 0, "processing": 5}


@pytest.mark.asyncio
async def test_mark_job_as_succeeded_and_failed(storage, recorder):
    await storage.enqueue("sample", SampleData(value=33))
    await storage.enqueue("sample", SampleData(value=44))

    job = await storage.dequeue()
    await storage.mark_succeeded(job.id)
    assert len(recorder.failed) == 0
    assert len(recorder.succeeded) == 1
    assert recorder.succeeded[0].job.data.value == 33

    job = await storage.dequeue()
    await storage.mark_failed(job.id, RuntimeError("oops"))
    assert len(recorder.succeeded) == 1
    assert len(recorder.failed) == 1
    assert recorder.failed[0].job.data.value == 44
    assert str(recorder.failed[0].error) == "oops"

    assert await storage.list_jobs() == []


@pytest.mark.asyncio
async def test_mark_failed_only_notifies_failed_subscribers(storage, recorder):
    await storage.enqueue("sample", SampleData(value=1))
    job = await storage.dequeue()

    await storage.mark_failed(job.id, ValueError("oops"))

    assert [str(e.error) for e in recorder.failed] == ["oops"]
    assert recorder.succeeded == []


@pytest.mark.asyncio
async def test_completed_job_disappears_from_listing(storage):
    keep = await storage.enqueue("sample", SampleData(value=1))
    await storage.enqueue("sample", SampleData(value=2))

    first = await storage.dequeue()
    second = await storage.dequeue()
    await storage.mark_succeeded(second.id)

    assert [j.id for j in await storage.list_jobs()] == [first.id]
    assert first.id == keep.id


@pytest.mark.asyncio
async def test_mark_queued_job_is_invalid(storage, recorder):
    job = await storage.enqueue("sample", SampleData(value=1))

    with pytest.raises(InvalidJobState):
        await storage.mark_succeeded(job.id)
    with pytest.raises(InvalidJobState):
        await storage.mark_failed(job.id, RuntimeError("x"))

    assert recorder.succeeded == []
    assert recorder.failed == []
    assert [j.id for j in await storage.list_jobs()] == [job.id]


@pytest.mark.asyncio
async def test_mark_unknown_job_is_invalid(storage, recorder):
    with pytest.raises(InvalidJobState) as exc_info:
        await storage.mark_succeeded(9999)
    assert exc_info.value.job_id == 9999
    assert recorder.succeeded == []


@pytest.mark.asyncio
async def test_double_completion_is_rejected(storage, recorder):
    await storage.enqueue("sample", SampleData(value=1))
    job = await storage.dequeue()
    await storage.mark_succeeded(job.id)

    with pytest.raises(InvalidJobState):
        await storage.mark_succeeded(job.id)
    with pytest.raises(InvalidJobState):
        await storage.mark_failed(job.id, RuntimeError("late"))

    assert len(recorder.succeeded) == 1
    assert recorder.failed == []


@pytest.mark.asyncio
async def test_list_jobs_by_type(storage):
    a = await storage.enqueue("sample", SampleData(value=1))
    b = await storage.enqueue("other", SampleData(value=2))
    c = await storage.enqueue("sample", SampleData(value=3))
    await storage.dequeue()

    assert [j.id for j in await storage.list_jobs()] == [a.id, b.id, c.id]
    assert [j.id for j in await storage.list_jobs("sample")] == [a.id, c.id]
    assert [j.id for j in await storage.list_jobs("other")] == [b.id]
    assert await storage.list_jobs("missing") == []


@pytest.mark.asyncio
async def test_requeue_orphaned_jobs(storage):
    queued = await storage.enqueue("sample", SampleData(value=1))
    job = await storage.dequeue()
    await storage.enqueue("sample", SampleData(value=2))

    assert await storage.requeue_orphaned() == 1
    assert await storage.counts() == {"queued": 2, "processing": 0}

    again = await storage.dequeue()
    assert again.id == job.id == queued.id


@pytest.mark.asyncio
async def test_requeue_orphaned_leaves_queued_jobs_alone(storage):
    await storage.enqueue("sample", SampleData(value=1))
    assert await storage.requeue_orphaned() == 0
    assert await storage.counts() == {"queued": 1, "processing": 0}


@pytest.mark.asyncio
async def test_repair_removes_jobs_with_unknown_type(storage, registry, recorder):
    good = await storage.enqueue("sample", SampleData(value=1))
    bad = await storage.enqueue("other", SampleData(value=2))
    registry.unregister("other")

    removed = await storage.repair_corrupt()

    assert removed == [bad.id]
    assert [j.id for j in await storage.list_jobs()] == [good.id]
    assert recorder.succeeded == []
    assert recorder.failed == []


@pytest.mark.asyncio
async def test_repair_keeps_healthy_jobs(storage):
    await storage.enqueue("sample", SampleData(value=1))
    await storage.dequeue()

    assert await storage.repair_corrupt() == []
    assert await storage.counts() == {"queued": 0, "processing": 1}


@pytest.mark.asyncio
async def test_dequeue_malformed_job_raises_without_claiming(storage, registry):
    bad = await storage.enqueue("other", SampleData(value=1))
    registry.unregister("other")

    with pytest.raises(MalformedJob) as exc_info:
        await storage.dequeue()

    assert exc_info.value.job_id == bad.id
    assert await storage.counts() == {"queued": 1, "processing": 0}


@pytest.mark.asyncio
async def test_enqueue_rejects_unregistered_type(storage):
    with pytest.raises(UnknownJobType):
        await storage.enqueue("nope", SampleData())
    assert await storage.counts() == {"queued": 0, "processing": 0}


@pytest.mark.asyncio
async def test_enqueue_rejects_wrong_payload_shape(storage):
    with pytest.raises(TypeError):
        await storage.enqueue("sample", {"value": 1})
    assert await storage.list_jobs() == []


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_undo_enqueue(storage):
    received = []

    def broken(event):
        raise RuntimeError("subscriber down")

    storage.events.enqueued.subscribe(broken)
    storage.events.enqueued.subscribe(received.append)

    with pytest.raises(SubscriberError) as exc_info:
        await storage.enqueue("sample", SampleData(value=5))

    assert len(received) == 1
    assert [str(e) for e in exc_info.value.errors] == ["subscriber down"]
    job = await storage.dequeue()
    assert job.data.value == 5
