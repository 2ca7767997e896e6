"""BuildRunPipeline — fetch, provision, build, start, publish.

``run()`` goes through these stages, each of which may fail:

1. **fetch** the repository (:class:`~repobox.fetcher.GitFetcher`).
2. **provision** an engine host (:class:`~repobox.hosts.HostProvisioner`).
3. **build** the image while the build context streams into the engine.
4. **start** a container and follow its combined output.
5. **publish** the output stream in the :class:`OutputMultiplexer`.
6. **register** a ``RUNNING`` sandbox in the :class:`SandboxRegistry`.

The clone is removed once the build is over, whatever its outcome.  A failure
before the container starts leaves no sandbox record and releases the host
lease.  On success the lease travels with the sandbox record and is released
when the sandbox is removed.
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import re
import threading
import uuid
from collections.abc import Callable

from pydantic import BaseModel

from repobox.config import EngineSettings
from repobox.engine.docker_engine import DockerEngine
from repobox.errors import ProvisionError, RequestValidationError, SandboxRuntimeError
from repobox.fetcher.git_fetcher import GitFetcher
from repobox.hosts.provisioner import HostProvisioner
from repobox.models import HostLease, HostMode, Sandbox, SandboxStatus
from repobox.multiplexer import OutputMultiplexer
from repobox.registry import SandboxRegistry
from repobox.telemetry import (
    ATTR_IMAGE_REF,
    ATTR_OWNER,
    ATTR_SANDBOX_ID,
    ATTR_SOURCE_REF,
    ATTR_STREAM_KEY,
    get_tracer,
)

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

_TAG_UNSAFE = re.compile(r"[^a-z0-9_.-]+")

EngineFactory = Callable[[str], DockerEngine]


class RunResult(BaseModel):
    """What a successful :meth:`BuildRunPipeline.run` hands back."""

    sandbox: Sandbox
    stream_key: str


def image_tag_for(owner_id: str, request_number: int) -> str:
    """A Docker-safe image tag unique to this owner and request."""
    slug = _TAG_UNSAFE.sub("-", owner_id.lower()).strip("-.") or "owner"
    return f"repobox-{slug[:80]}-{request_number}"


class BuildRunPipeline:
    """Turns a repository URL into a running, registered sandbox."""

    def __init__(
        self,
        *,
        fetcher: GitFetcher,
        provisioner: HostProvisioner,
        registry: SandboxRegistry,
        multiplexer: OutputMultiplexer,
        engine_settings: EngineSettings | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._provisioner = provisioner
        self._registry = registry
        self._multiplexer = multiplexer
        self._engine_settings = engine_settings or EngineSettings()
        self._engine_factory = engine_factory or self._default_engine
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()

    @property
    def fetcher(self) -> GitFetcher:
        return self._fetcher

    def _default_engine(self, endpoint: str) -> DockerEngine:
        settings = self._engine_settings
        return DockerEngine(
            endpoint,
            docker_binary=settings.docker_binary,
            build_timeout=settings.build_timeout,
            stop_timeout=settings.stop_timeout,
        )

    def engine_for(self, lease: HostLease | None) -> DockerEngine:
        """The engine client for *lease* (the local engine when ``None``)."""
        endpoint = lease.endpoint if lease is not None else self._engine_settings.local_endpoint
        return self._engine_factory(endpoint)

    def _next_request(self) -> int:
        with self._counter_lock:
            return next(self._counter)

    async def run(
        self,
        owner_id: str,
        source_ref: str,
        image_ref: str | None = None,
        *,
        mode: HostMode | None = None,
    ) -> RunResult:
        """Build *source_ref* and start it as a sandbox owned by *owner_id*.

        Raises:
            RequestValidationError: Missing owner or bad repository URL.
            FetchError: Clone, spec lookup or archive production failed.
            ProvisionError: No engine host could be obtained.
            BuildError: The engine rejected the build.
            SandboxRuntimeError: The container could not be created or started.
        """
        if not owner_id:
            raise RequestValidationError("owner_id is required")
        self._fetcher.validate_url(source_ref)

        number = self._next_request()
        stream_key = f"{owner_id}-{number}"
        image_ref = image_ref or image_tag_for(owner_id, number)

        with _tracer.start_as_current_span("repobox.run") as span:
            span.set_attribute(ATTR_OWNER, owner_id)
            span.set_attribute(ATTR_SOURCE_REF, source_ref)
            span.set_attribute(ATTR_IMAGE_REF, image_ref)

            with _tracer.start_as_current_span("repobox.fetch"):
                source = await self._fetcher.fetch(source_ref)

            lease: HostLease | None = None
            try:
                try:
                    lease = await self._provisioner.acquire(mode)
                    engine = self.engine_for(lease)
                    with _tracer.start_as_current_span("repobox.build"):
                        await engine.build(
                            image_ref,
                            self._fetcher.archive(source),
                            source.spec_relative_path,
                        )
                finally:
                    await self._fetcher.cleanup(source)

                with _tracer.start_as_current_span("repobox.start"):
                    container_id = await engine.create_and_start(
                        image_ref, name=f"{image_tag_for(owner_id, number)}-{uuid.uuid4().hex[:6]}"
                    )
                    try:
                        stream = await engine.logs(container_id)
                    except BaseException:
                        with contextlib.suppress(SandboxRuntimeError):
                            await engine.remove(container_id)
                        raise
            except BaseException:
                await self._release_quietly(lease)
                raise

            await self._multiplexer.store(stream_key, stream)
            sandbox = Sandbox(
                id=container_id,
                owner_id=owner_id,
                image_ref=image_ref,
                status=SandboxStatus.RUNNING,
                stream_key=stream_key,
                source_ref=source_ref,
                host=lease,
            )
            self._registry.put(sandbox)

            span.set_attribute(ATTR_SANDBOX_ID, container_id)
            span.set_attribute(ATTR_STREAM_KEY, stream_key)

        logger.info(
            "Sandbox %s running for %s (image=%s, stream=%s)",
            container_id[:12],
            owner_id,
            image_ref,
            stream_key,
        )
        return RunResult(sandbox=sandbox, stream_key=stream_key)

    async def _release_quietly(self, lease: HostLease | None) -> None:
        """Release *lease* during failure handling without masking the failure."""
        try:
            await self._provisioner.release(lease)
        except ProvisionError:
            logger.exception("Failed to release host lease %s", lease)
