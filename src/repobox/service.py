"""SandboxService — the one object that owns all orchestration state.

A service is constructed once per process and holds the registry, the output
multiplexer, the host provisioner, the pipeline and the job queue as fields.
Callers submit work through the ``submit_*`` coroutines; each one enqueues a
:class:`~repobox.queue.Job` and awaits that job's future.

Example::

    service = SandboxService(load_config())
    async with service:
        run = await service.submit_create("alice", "https://github.com/acme/demo")
        await service.attach(run.stream_key, write_to_terminal)
"""

from __future__ import annotations

import logging
from typing import Any

from repobox.config import RepoboxConfig
from repobox.engine.streams import OutputStream
from repobox.errors import NotFoundError, RequestValidationError, SandboxRuntimeError
from repobox.fetcher.git_fetcher import GitFetcher
from repobox.hosts.compute import AwsCliCompute, ComputeAPI
from repobox.hosts.provisioner import HostProvisioner
from repobox.models import HostMode, Sandbox, SandboxStatus
from repobox.multiplexer import DrainResult, OutputMultiplexer, Sink
from repobox.pipeline import BuildRunPipeline, EngineFactory, RunResult
from repobox.queue.job_queue import JobQueue
from repobox.queue.models import Job, JobKind
from repobox.registry import SandboxRegistry

logger = logging.getLogger(__name__)


class SandboxService:
    """Queue-fronted orchestration of sandbox create/stop/remove/inspect."""

    def __init__(
        self,
        config: RepoboxConfig | None = None,
        *,
        fetcher: GitFetcher | None = None,
        compute: ComputeAPI | None = None,
        provisioner: HostProvisioner | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self.config = config or RepoboxConfig()
        cfg = self.config

        # remote.enabled only picks the default mode; Remote can still be requested per job.
        if compute is None:
            compute = AwsCliCompute(cfg.remote)

        self.registry = SandboxRegistry()
        self.multiplexer = OutputMultiplexer(chunk_size=cfg.engine.chunk_size)
        self.provisioner = provisioner or HostProvisioner(
            local_endpoint=cfg.engine.local_endpoint,
            settings=cfg.remote,
            compute=compute,
        )
        self.pipeline = BuildRunPipeline(
            fetcher=fetcher or GitFetcher(cfg.fetcher),
            provisioner=self.provisioner,
            registry=self.registry,
            multiplexer=self.multiplexer,
            engine_settings=cfg.engine,
            engine_factory=engine_factory,
        )
        self.queue = JobQueue(
            self._handle,
            capacity=cfg.queue.capacity,
            enqueue_timeout=cfg.queue.enqueue_timeout,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.queue.start(self.config.queue.workers)

    async def shutdown(self) -> None:
        """Stop the queue, close unconsumed streams and release every remote host."""
        await self.queue.stop(timeout=self.config.queue.stop_timeout)
        for key in self.multiplexer.keys():
            stream = self.multiplexer.discard(key)
            if stream is not None:
                await stream.close()
        await self.provisioner.release_all()
        logger.info("Sandbox service shut down (%d sandbox record(s) left)", len(self.registry))

    async def __aenter__(self) -> SandboxService:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Caller boundary
    # ------------------------------------------------------------------

    async def submit_create(
        self,
        owner_id: str,
        repo_url: str,
        image_ref: str | None = None,
        *,
        mode: HostMode | None = None,
        timeout: float | None = None,
    ) -> RunResult:
        """Build *repo_url* and start it for *owner_id*.

        Invalid input is rejected here, before the job is queued.
        """
        if not owner_id:
            raise RequestValidationError("owner_id is required")
        self.pipeline.fetcher.validate_url(repo_url)
        job = Job(
            kind=JobKind.CREATE,
            owner_id=owner_id,
            source_ref=repo_url,
            image_ref=image_ref,
            host_mode=mode,
        )
        return await self._submit(job, timeout)

    async def submit_stop(self, sandbox_id: str, *, timeout: float | None = None) -> Sandbox:
        return await self._submit(Job(kind=JobKind.STOP, sandbox_id=sandbox_id), timeout)

    async def submit_remove(self, sandbox_id: str, *, timeout: float | None = None) -> Sandbox:
        return await self._submit(Job(kind=JobKind.REMOVE, sandbox_id=sandbox_id), timeout)

    async def submit_inspect(self, sandbox_id: str, *, timeout: float | None = None) -> Sandbox:
        return await self._submit(Job(kind=JobKind.INSPECT, sandbox_id=sandbox_id), timeout)

    def lookup_stream(self, stream_key: str) -> OutputStream:
        """Return the live output stream for *stream_key*.

        Raises:
            NotFoundError: Nothing is published under the key.
        """
        return self.multiplexer.load(stream_key)

    def list_sandboxes(self, owner_id: str) -> list[Sandbox]:
        return self.registry.list_by_owner(owner_id)

    async def attach(self, stream_key: str, *sinks: Sink) -> DrainResult:
        """Drain the output under *stream_key* into *sinks*.

        When the stream ends normally the sandbox it belongs to is marked
        ``STOPPED`` if it is still ``RUNNING``; when reading the stream fails
        it is marked ``ERROR``.
        """
        result = await self.multiplexer.drain(stream_key, *sinks)
        if result.exhausted:
            self._mark_by_stream(stream_key, SandboxStatus.STOPPED)
        elif result.read_failed:
            self._mark_by_stream(stream_key, SandboxStatus.ERROR)
        return result

    def _mark_by_stream(self, stream_key: str, status: SandboxStatus) -> None:
        record = self.registry.find_by_stream(stream_key)
        if record is None or record.status is not SandboxStatus.RUNNING:
            return
        self._mark(record.id, status)

    def _mark(self, sandbox_id: str, status: SandboxStatus) -> None:
        try:
            self.registry.update_status(sandbox_id, status)
        except (NotFoundError, RequestValidationError) as exc:
            # Lost a race with a concurrent stop/remove.
            logger.debug("Not marking sandbox %s %s: %s", sandbox_id, status.value, exc)
            return
        logger.info("Sandbox %s marked %s", sandbox_id[:12], status.value)

    async def _submit(self, job: Job, timeout: float | None) -> Any:
        await self.queue.enqueue(job)
        return await job.wait(timeout)

    # ------------------------------------------------------------------
    # Worker dispatch
    # ------------------------------------------------------------------

    async def _handle(self, job: Job) -> Any:
        if job.kind is JobKind.CREATE:
            assert job.source_ref is not None
            return await self.pipeline.run(
                job.owner_id, job.source_ref, job.image_ref, mode=job.host_mode
            )

        assert job.sandbox_id is not None
        if job.kind is JobKind.STOP:
            return await self._stop(job.sandbox_id)
        if job.kind is JobKind.REMOVE:
            return await self._remove(job.sandbox_id)
        if job.kind is JobKind.INSPECT:
            return self.registry.require(job.sandbox_id)
        raise RequestValidationError(f"Unknown job kind: {job.kind}")

    async def _stop(self, sandbox_id: str) -> Sandbox:
        record = self.registry.require(sandbox_id)
        try:
            await self.pipeline.engine_for(record.host).stop(sandbox_id)
        except SandboxRuntimeError:
            self._mark(sandbox_id, SandboxStatus.ERROR)
            raise
        return self.registry.update_status(sandbox_id, SandboxStatus.STOPPED)

    async def _remove(self, sandbox_id: str) -> Sandbox:
        record = self.registry.require(sandbox_id)
        await self.pipeline.engine_for(record.host).remove(sandbox_id)

        removed = self.registry.delete(sandbox_id)
        if removed is None:
            # A concurrent remove already finished the teardown.
            raise NotFoundError("sandbox", sandbox_id)

        if removed.stream_key:
            stream = self.multiplexer.discard(removed.stream_key)
            if stream is not None:
                await stream.close()
        await self.provisioner.release(removed.host)

        logger.info("Removed sandbox %s", sandbox_id[:12])
        return removed.model_copy(update={"status": SandboxStatus.REMOVED})
