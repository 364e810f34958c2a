"""Tests for the batch scheduler: single-flight, failure isolation, debounced re-arm."""
import asyncio

import pytest

from common.errors import DecodeError, EncodeError
from common.handles import DisplayHandle
from common.job_schema import (
    CompressSettings,
    ConvertSettings,
    ErrorKind,
    JobStatus,
    ResizeSettings,
    Result,
)
from common.storage import SourceFile
from conftest import make_image, open_image
from worker.scheduler import BatchScheduler

DEBOUNCE = 0.05


def _sources(n=3):
    return [SourceFile(content=b"src%d" % i, mime="image/png", name=f"f{i}.png") for i in range(n)]


def _fake_result(job):
    data = b"out-" + job.id.encode()
    return Result(
        encoded_bytes=data, mime="image/png", filename=f"{job.id}.png", width=1, height=1,
        original_size=job.original_size, compressed_size=len(data), handle=DisplayHandle(data),
    )


class RecordingExecutor:
    """Fake executor that can be held open and tracks concurrency."""

    def __init__(self, fail=None):
        self.gate = asyncio.Event()
        self.gate.set()
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.fail = fail or {}

    async def __call__(self, job, settings):
        self.calls.append((job.name, settings))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
        finally:
            self.active -= 1
        if job.name in self.fail:
            raise self.fail[job.name]
        return _fake_result(job)


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _statuses(scheduler):
    return [j.status for j in scheduler.jobs]


@pytest.fixture
async def executor():
    return RecordingExecutor()


@pytest.fixture
async def scheduler(executor):
    s = BatchScheduler(executor=executor, debounce_seconds=DEBOUNCE, tick_delay=0)
    yield s
    await s.close()


async def test_drains_in_order_one_at_a_time(scheduler, executor):
    executor.gate.clear()
    scheduler.intake(_sources(3))
    scheduler.start()

    await wait_for(lambda: executor.active == 1)
    assert _statuses(scheduler) == [JobStatus.PROCESSING, JobStatus.PENDING, JobStatus.PENDING]
    executor.gate.set()

    await asyncio.wait_for(scheduler.wait_idle(), 2)
    assert [name for name, _ in executor.calls] == ["f0.png", "f1.png", "f2.png"]
    assert executor.max_active == 1
    assert _statuses(scheduler) == [JobStatus.COMPLETED] * 3


async def test_tick_refuses_while_in_flight(scheduler, executor):
    executor.gate.clear()
    scheduler.intake(_sources(2))
    first = asyncio.create_task(scheduler.tick())
    await wait_for(lambda: executor.active == 1)
    assert await scheduler.tick() is False
    assert scheduler.store.count(JobStatus.PROCESSING) == 1
    executor.gate.set()
    assert await first is True


async def test_failure_does_not_block_batch():
    executor = RecordingExecutor(fail={"f1.png": DecodeError("corrupt"), "f2.png": RuntimeError("boom")})
    scheduler = BatchScheduler(executor=executor, debounce_seconds=DEBOUNCE, tick_delay=0)
    scheduler.intake(_sources(4))
    while await scheduler.tick():
        pass

    jobs = scheduler.jobs
    assert [j.status for j in jobs] == [
        JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.ERROR, JobStatus.COMPLETED,
    ]
    assert jobs[1].error == ErrorKind.DECODE
    assert jobs[1].error_detail == "corrupt"
    assert jobs[2].error == ErrorKind.INTERNAL
    assert jobs[1].result is None
    await scheduler.close()


async def test_encode_error_kind():
    executor = RecordingExecutor(fail={"f0.png": EncodeError("no encoder")})
    s = BatchScheduler(executor=executor, tick_delay=0)
    s.intake(_sources(1))
    await s.tick()
    assert s.jobs[0].error == ErrorKind.ENCODE
    await s.close()


async def test_settings_change_rearms_after_quiet_window(scheduler, executor):
    scheduler.intake(_sources(2))
    while await scheduler.tick():
        pass
    old_results = [j.result for j in scheduler.jobs]

    new = CompressSettings(max_size_kb=100)
    scheduler.on_settings_changed(new)
    # Nothing happens before the window elapses
    assert _statuses(scheduler) == [JobStatus.COMPLETED] * 2

    await asyncio.sleep(DEBOUNCE * 3)
    assert _statuses(scheduler) == [JobStatus.PENDING] * 2
    assert all(r.handle.released for r in old_results)
    assert all(j.result is None for j in scheduler.jobs)

    while await scheduler.tick():
        pass
    assert [s for _, s in executor.calls[-2:]] == [new, new]


async def test_tool_change_rearms_batch_instead_of_clearing(scheduler, executor):
    scheduler.intake(_sources(2))
    while await scheduler.tick():
        pass
    ids = [j.id for j in scheduler.jobs]

    scheduler.on_settings_changed(ResizeSettings(resize_percentage=50))
    await asyncio.sleep(DEBOUNCE * 3)
    assert [j.id for j in scheduler.jobs] == ids
    assert _statuses(scheduler) == [JobStatus.PENDING] * 2

    while await scheduler.tick():
        pass
    assert [s.tool for _, s in executor.calls[-2:]] == ["resize", "resize"]


async def test_rapid_changes_coalesce(scheduler, executor):
    scheduler.intake(_sources(1))
    await scheduler.tick()

    for kb in (10, 20, 30, 40):
        scheduler.on_settings_changed(CompressSettings(max_size_kb=kb))
        await asyncio.sleep(DEBOUNCE / 5)
    # Still inside the window of the last change
    assert _statuses(scheduler) == [JobStatus.COMPLETED]

    await asyncio.sleep(DEBOUNCE * 3)
    assert _statuses(scheduler) == [JobStatus.PENDING]
    await scheduler.tick()
    assert executor.calls[-1][1] == CompressSettings(max_size_kb=40)
    assert len(executor.calls) == 2


async def test_identical_settings_do_not_rearm(scheduler):
    scheduler.intake(_sources(1))
    await scheduler.tick()
    scheduler.on_settings_changed(CompressSettings())
    await asyncio.sleep(DEBOUNCE * 3)
    assert _statuses(scheduler) == [JobStatus.COMPLETED]


async def test_processing_job_keeps_its_settings(scheduler, executor):
    scheduler.intake(_sources(2))
    while await scheduler.tick():
        pass

    # Re-arm, then hold the first job open mid-flight
    executor.gate.clear()
    scheduler.on_settings_changed(ConvertSettings())
    await asyncio.sleep(DEBOUNCE * 3)
    running = asyncio.create_task(scheduler.tick())
    await wait_for(lambda: executor.active == 1)

    scheduler.on_settings_changed(ConvertSettings(format="image/webp"))
    await asyncio.sleep(DEBOUNCE * 3)
    first, second = scheduler.jobs
    assert first.status == JobStatus.PROCESSING
    assert first.settings_snapshot == ConvertSettings()
    assert second.status == JobStatus.PENDING

    executor.gate.set()
    await running
    assert scheduler.jobs[0].status == JobStatus.COMPLETED
    assert executor.calls[-1][1] == ConvertSettings()

    await scheduler.tick()
    assert executor.calls[-1][1] == ConvertSettings(format="image/webp")


async def test_intake_replaces_batch_and_releases_handles(scheduler):
    scheduler.intake(_sources(2))
    while await scheduler.tick():
        pass
    old = [j.result for j in scheduler.jobs]

    ids = scheduler.intake(_sources(1))
    assert all(r.handle.released for r in old)
    assert [j.id for j in scheduler.jobs] == ids
    assert _statuses(scheduler) == [JobStatus.PENDING]


async def test_result_of_replaced_job_is_discarded(scheduler, executor):
    executor.gate.clear()
    scheduler.intake(_sources(1))
    running = asyncio.create_task(scheduler.tick())
    await wait_for(lambda: executor.active == 1)

    new_ids = scheduler.intake(_sources(2))
    executor.gate.set()
    await running
    assert [j.id for j in scheduler.jobs] == new_ids
    assert _statuses(scheduler) == [JobStatus.PENDING, JobStatus.PENDING]


async def test_reset_clears_and_releases(scheduler):
    scheduler.intake(_sources(2))
    while await scheduler.tick():
        pass
    old = [j.result for j in scheduler.jobs]
    scheduler.reset()
    assert scheduler.jobs == []
    assert all(r.handle.released for r in old)


async def test_summary(scheduler):
    scheduler.intake(_sources(2))
    await scheduler.tick()
    summary = scheduler.summary()
    assert summary["total"] == 2
    assert summary["counts"]["completed"] == 1
    assert summary["counts"]["pending"] == 1
    assert summary["total_original_size"] == 8
    assert summary["total_compressed_size"] == len(scheduler.jobs[0].result.encoded_bytes)


async def test_end_to_end_resize_half():
    sizes = [(100, 60), (33, 17), (640, 480)]
    sources = [
        SourceFile(content=make_image(w, h), mime="image/png", name=f"img{i}.png")
        for i, (w, h) in enumerate(sizes)
    ]
    scheduler = BatchScheduler(
        settings=ResizeSettings(resize_mode="percentage", resize_percentage=50, format="image/png"),
        debounce_seconds=DEBOUNCE,
        tick_delay=0,
    )
    scheduler.start()
    scheduler.intake(sources)
    await asyncio.wait_for(scheduler.wait_idle(), 10)

    jobs = scheduler.jobs
    assert [j.status for j in jobs] == [JobStatus.COMPLETED] * 3
    for job, (w, h) in zip(jobs, sizes):
        expected = (int(w / 2 + 0.5), int(h / 2 + 0.5))
        assert (job.result.width, job.result.height) == expected
        assert open_image(job.result.encoded_bytes).size == expected
        assert job.result.filename.endswith("_resized.png")
    await scheduler.close()
