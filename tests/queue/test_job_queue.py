"""Tests for JobQueue."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from repobox.errors import QueueClosedError, QueueFullError, RequestValidationError
from repobox.queue import Job, JobKind, JobQueue


def _inspect(sandbox_id: str = "c1") -> Job:
    return Job(kind=JobKind.INSPECT, sandbox_id=sandbox_id)


async def _until(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class _GatedHandler:
    """Handler that blocks every job until ``gate`` is set."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.seen: list[str | None] = []

    async def __call__(self, job: Job) -> Any:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.seen.append(job.sandbox_id)
        try:
            await self.gate.wait()
        finally:
            self.active -= 1
        return f"done:{job.sandbox_id}"


class TestJob:
    async def test_validation(self) -> None:
        with pytest.raises(RequestValidationError, match="owner_id"):
            Job(kind=JobKind.CREATE, source_ref="https://github.com/a/b").validate()
        with pytest.raises(RequestValidationError, match="source_ref"):
            Job(kind=JobKind.CREATE, owner_id="alice").validate()
        with pytest.raises(RequestValidationError, match="sandbox_id"):
            Job(kind=JobKind.STOP).validate()

    async def test_result_is_one_shot(self) -> None:
        job = _inspect()
        assert job.resolve("first") is True
        assert job.resolve("second") is False
        assert job.fail(RuntimeError("late")) is False
        assert await job.wait() == "first"

    async def test_wait_timeout_leaves_future_pending(self) -> None:
        job = _inspect()
        with pytest.raises(TimeoutError):
            await job.wait(timeout=0.01)
        assert not job.result.done()


class TestJobQueue:
    async def test_runs_job_and_resolves_future(self) -> None:
        async def handler(job: Job) -> str:
            return f"inspected {job.sandbox_id}"

        queue = JobQueue(handler)
        await queue.start(2)
        job = _inspect("abc")

        await queue.enqueue(job)

        assert await job.wait(1.0) == "inspected abc"
        await queue.stop()
        assert queue.stats().completed == 1

    async def test_enqueue_before_start(self) -> None:
        queue = JobQueue(_GatedHandler())
        with pytest.raises(QueueClosedError):
            await queue.enqueue(_inspect())

    async def test_enqueue_validates(self) -> None:
        queue = JobQueue(_GatedHandler())
        await queue.start(1)
        with pytest.raises(RequestValidationError):
            await queue.enqueue(Job(kind=JobKind.REMOVE))
        await queue.stop()

    async def test_full_backlog_times_out_and_recovers(self) -> None:
        handler = _GatedHandler()
        queue = JobQueue(handler, capacity=1, enqueue_timeout=0.05)
        await queue.start(1)

        running, backlog = _inspect("a"), _inspect("b")
        await queue.enqueue(running)
        await _until(lambda: handler.active == 1)
        await queue.enqueue(backlog)

        with pytest.raises(QueueFullError):
            await queue.enqueue(_inspect("c"))
        assert queue.stats().queued == 1

        handler.gate.set()
        assert await running.wait(1.0) == "done:a"
        assert await backlog.wait(1.0) == "done:b"

        later = _inspect("d")
        await queue.enqueue(later)
        assert await later.wait(1.0) == "done:d"
        await queue.stop()

    async def test_workers_run_in_parallel(self) -> None:
        handler = _GatedHandler()
        queue = JobQueue(handler)
        await queue.start(3)
        jobs = [_inspect(f"c{i}") for i in range(3)]

        for job in jobs:
            await queue.enqueue(job)
        await _until(lambda: handler.active == 3)
        handler.gate.set()

        results = await asyncio.gather(*(job.wait(1.0) for job in jobs))
        assert sorted(results) == ["done:c0", "done:c1", "done:c2"]
        assert handler.max_active == 3
        await queue.stop()

    async def test_job_error_is_contained(self) -> None:
        async def handler(job: Job) -> str:
            if job.sandbox_id == "bad":
                raise RuntimeError("engine exploded")
            return "ok"

        queue = JobQueue(handler)
        await queue.start(1)
        bad, good = _inspect("bad"), _inspect("good")

        await queue.enqueue(bad)
        await queue.enqueue(good)

        with pytest.raises(RuntimeError, match="engine exploded"):
            await bad.wait(1.0)
        assert await good.wait(1.0) == "ok"

        stats = queue.stats()
        assert stats.failed == 1
        assert stats.completed == 1
        await queue.stop()


class TestStop:
    async def test_waits_for_in_flight_and_fails_backlog(self) -> None:
        handler = _GatedHandler()
        queue = JobQueue(handler)
        await queue.start(1)
        in_flight, waiting = _inspect("a"), _inspect("b")
        await queue.enqueue(in_flight)
        await _until(lambda: handler.active == 1)
        await queue.enqueue(waiting)

        stopper = asyncio.create_task(queue.stop())
        await asyncio.sleep(0.02)
        assert not stopper.done()

        handler.gate.set()
        await asyncio.wait_for(stopper, 1.0)

        assert await in_flight.wait() == "done:a"
        with pytest.raises(QueueClosedError):
            await waiting.wait()
        assert handler.seen == ["a"]
        assert not queue.running

    async def test_enqueue_blocked_across_stop_fails_its_job(self) -> None:
        handler = _GatedHandler()
        queue = JobQueue(handler, capacity=1, enqueue_timeout=2.0)
        await queue.start(1)
        await queue.enqueue(_inspect("busy"))
        await _until(lambda: handler.active == 1)
        await queue.enqueue(_inspect("backlog"))

        late = _inspect("late")
        blocked = asyncio.create_task(queue.enqueue(late))
        await asyncio.sleep(0.02)
        assert not blocked.done()

        await queue.stop(timeout=0.05)

        with pytest.raises(QueueClosedError):
            await asyncio.wait_for(blocked, 1.0)
        assert late.result.done()
        with pytest.raises(QueueClosedError):
            await late.wait()
        assert handler.seen == ["busy"]

    async def test_enqueue_after_stop(self) -> None:
        queue = JobQueue(_GatedHandler())
        await queue.start(2)
        await queue.stop()

        with pytest.raises(QueueClosedError):
            await queue.enqueue(_inspect())

    async def test_stop_idle_queue_returns_promptly(self) -> None:
        queue = JobQueue(_GatedHandler())
        await queue.start(4)
        await asyncio.wait_for(queue.stop(), 1.0)
        assert queue.stats().workers == 0

    async def test_stop_timeout_cancels_busy_job(self) -> None:
        handler = _GatedHandler()
        queue = JobQueue(handler)
        await queue.start(1)
        stuck = _inspect("stuck")
        await queue.enqueue(stuck)
        await _until(lambda: handler.active == 1)

        await queue.stop(timeout=0.05)

        assert stuck.result.cancelled()

    async def test_restart_after_stop(self) -> None:
        async def handler(job: Job) -> str:
            return "ok"

        queue = JobQueue(handler)
        await queue.start(1)
        await queue.stop()
        await queue.start(1)

        job = _inspect()
        await queue.enqueue(job)
        assert await job.wait(1.0) == "ok"
        await queue.stop()

    async def test_invalid_worker_count(self) -> None:
        with pytest.raises(ValueError, match="workers"):
            await JobQueue(_GatedHandler()).start(0)
