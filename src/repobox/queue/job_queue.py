"""JobQueue — bounded backlog drained by a fixed pool of worker tasks.

Architecture::

    enqueue() -> asyncio.Queue (bounded) -> N workers -> handler(job) -> job.result

``enqueue`` waits up to its timeout for a free slot and then fails with
:class:`~repobox.errors.QueueFullError`; the queue itself is unaffected.
Workers run independently, so unrelated jobs proceed in parallel and a job
that fails only fails its own future.

``stop`` is graceful: idle workers are cancelled straight away, busy workers
finish their current job and exit without dequeuing another one.  Jobs still
waiting in the backlog are failed with
:class:`~repobox.errors.QueueClosedError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from repobox.errors import QueueClosedError, QueueFullError
from repobox.queue.models import Job
from repobox.telemetry import ATTR_JOB_KIND, ATTR_OWNER, ATTR_SANDBOX_ID, get_tracer

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


@dataclass
class QueueStats:
    """Queue statistics snapshot."""

    queued: int
    active: int
    workers: int
    completed: int
    failed: int
    avg_latency_ms: float


class JobQueue:
    """Fixed-capacity job queue with a worker pool."""

    def __init__(
        self,
        handler: JobHandler,
        *,
        capacity: int = 100,
        enqueue_timeout: float = 5.0,
    ) -> None:
        self._handler = handler
        self._capacity = capacity
        self._enqueue_timeout = enqueue_timeout

        self._queue: asyncio.Queue[Job] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._busy: set[asyncio.Task[None]] = set()
        self._stopping = False

        self._completed_count = 0
        self._failed_count = 0
        self._total_latency_ms = 0.0

    @property
    def running(self) -> bool:
        return self._queue is not None and not self._stopping

    async def start(self, workers: int) -> None:
        """Spawn *workers* worker tasks; a no-op if already running."""
        if self.running:
            return
        if workers < 1:
            msg = "workers must be >= 1"
            raise ValueError(msg)

        self._queue = asyncio.Queue(maxsize=self._capacity)
        self._stopping = False
        for index in range(workers):
            task = asyncio.create_task(self._worker(index), name=f"repobox-worker-{index}")
            self._workers.append(task)
        logger.info("JobQueue started: workers=%d, capacity=%d", workers, self._capacity)

    async def enqueue(self, job: Job, timeout: float | None = None) -> None:
        """Add *job* to the backlog, waiting up to *timeout* for room.

        Raises:
            RequestValidationError: The job is missing required fields.
            QueueClosedError: The queue is not running.
            QueueFullError: No slot became free within the timeout.
        """
        job.validate()
        if not self.running:
            raise QueueClosedError("Job queue is not running")
        queue = self._queue
        assert queue is not None

        wait = self._enqueue_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(queue.put(job), timeout=wait)
        except TimeoutError:
            raise QueueFullError(wait) from None

        if self._stopping or self._queue is not queue:
            # The slot was freed by stop() draining the backlog.
            exc = QueueClosedError("Job queue stopped before the job ran")
            job.fail(exc)
            raise exc
        logger.debug("Enqueued %s job (backlog=%d)", job.kind.value, queue.qsize())

    async def stop(self, timeout: float | None = None) -> None:
        """Stop taking jobs and wait for in-flight ones to finish.

        With *timeout* set, workers still busy after it elapses are cancelled.
        """
        if self._queue is None or self._stopping:
            return
        self._stopping = True

        for worker in self._workers:
            if worker not in self._busy:
                worker.cancel()

        if self._workers:
            _, pending = await asyncio.wait(self._workers, timeout=timeout)
            if pending:
                logger.warning("JobQueue stop timed out; cancelling %d busy worker(s)", len(pending))
                for worker in pending:
                    worker.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        abandoned = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            job.fail(QueueClosedError("Job queue stopped before the job ran"))
            abandoned += 1

        self._workers.clear()
        self._busy.clear()
        self._queue = None
        logger.info(
            "JobQueue stopped: completed=%d, failed=%d, abandoned=%d",
            self._completed_count,
            self._failed_count,
            abandoned,
        )

    def stats(self) -> QueueStats:
        """Get current queue statistics."""
        queued = self._queue.qsize() if self._queue else 0
        avg_latency = (
            self._total_latency_ms / self._completed_count if self._completed_count > 0 else 0.0
        )
        return QueueStats(
            queued=queued,
            active=len(self._busy),
            workers=len(self._workers),
            completed=self._completed_count,
            failed=self._failed_count,
            avg_latency_ms=avg_latency,
        )

    async def _worker(self, index: int) -> None:
        task = asyncio.current_task()
        assert task is not None and self._queue is not None
        queue = self._queue

        while not self._stopping:
            job = await queue.get()
            self._busy.add(task)
            try:
                await self._process(job)
            finally:
                self._busy.discard(task)
                queue.task_done()
        logger.debug("Worker %d exiting", index)

    async def _process(self, job: Job) -> None:
        start = time.monotonic()
        with _tracer.start_as_current_span("repobox.job") as span:
            span.set_attribute(ATTR_JOB_KIND, job.kind.value)
            if job.owner_id:
                span.set_attribute(ATTR_OWNER, job.owner_id)
            if job.sandbox_id:
                span.set_attribute(ATTR_SANDBOX_ID, job.sandbox_id)
            try:
                value = await self._handler(job)
            except asyncio.CancelledError:
                job.result.cancel()
                raise
            except Exception as exc:
                self._failed_count += 1
                logger.info("%s job failed: %s", job.kind.value, exc)
                job.fail(exc)
                return

        self._completed_count += 1
        self._total_latency_ms += (time.monotonic() - start) * 1000
        job.resolve(value)
