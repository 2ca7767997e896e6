"""DockerEngine — drives a (local or remote) Docker daemon via the ``docker`` CLI.

Uses the ``docker`` CLI via subprocess (no docker-py dependency).  Every
command is addressed with ``-H <endpoint>`` so the same class serves the local
socket and an ephemeral remote host.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from repobox.engine.streams import ProcessOutputStream
from repobox.errors import BuildError, EngineError, FetchError, SandboxRuntimeError

logger = logging.getLogger(__name__)

_BUILD_LOG_TAIL = 4000


class DockerEngine:
    """Container engine client bound to a single endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        docker_binary: str = "docker",
        build_timeout: float = 1800.0,
        stop_timeout: int = 10,
    ) -> None:
        self._endpoint = endpoint
        self._docker = docker_binary
        self._build_timeout = build_timeout
        self._stop_timeout = stop_timeout

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def _command(self, *args: str) -> list[str]:
        return [self._docker, "-H", self._endpoint, *args]

    async def ping(self) -> None:
        """Raise :class:`EngineError` unless the daemon answers."""
        await self._run(self._command("version", "--format", "{{.Server.Version}}"))

    async def build(self, tag: str, context: AsyncIterator[bytes], dockerfile: str) -> str:
        """Build *tag* from a tar *context* streamed into ``docker build -``.

        The context is consumed while the engine reads it, so a failing
        producer and a failing build race each other.  A
        :class:`~repobox.errors.FetchError` raised by the producer wins over
        the engine's complaint about a truncated stream; otherwise engine
        failures surface as :class:`~repobox.errors.BuildError`.

        Returns the build log.
        """
        try:
            return await asyncio.wait_for(
                self._build(tag, context, dockerfile),
                timeout=self._build_timeout,
            )
        except TimeoutError:
            raise BuildError(f"Build of {tag} timed out after {self._build_timeout}s") from None

    async def _build(self, tag: str, context: AsyncIterator[bytes], dockerfile: str) -> str:
        cmd = self._command("build", "--tag", tag, "--file", dockerfile, "-")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise BuildError(f"Failed to run docker: {exc}") from exc

        try:
            feed_result, log_result = await asyncio.gather(
                self._feed(proc, context),
                self._collect(proc),
                return_exceptions=True,
            )
            returncode = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if isinstance(feed_result, FetchError):
            raise feed_result
        if isinstance(log_result, BaseException):
            raise BuildError(f"Failed to read build output: {log_result}") from log_result

        build_log = log_result
        if returncode != 0:
            cause = feed_result if isinstance(feed_result, BaseException) else None
            raise BuildError(
                f"docker build of {tag} failed (rc={returncode})",
                build_log=build_log[-_BUILD_LOG_TAIL:],
            ) from cause
        if isinstance(feed_result, BaseException):
            raise BuildError(f"Streaming build context failed: {feed_result}") from feed_result

        logger.info("Built image %s on %s", tag, self._endpoint)
        return build_log

    @staticmethod
    async def _feed(proc: asyncio.subprocess.Process, context: AsyncIterator[bytes]) -> None:
        """Copy the context into the build's stdin, closing it on every path."""
        assert proc.stdin is not None
        try:
            async for chunk in context:
                proc.stdin.write(chunk)
                await proc.stdin.drain()
        finally:
            aclose = getattr(context, "aclose", None)
            if aclose is not None:
                await aclose()
            proc.stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await proc.stdin.wait_closed()

    @staticmethod
    async def _collect(proc: asyncio.subprocess.Process) -> str:
        assert proc.stdout is not None
        data = await proc.stdout.read()
        return data.decode(errors="replace")

    async def create_and_start(self, image_ref: str, *, name: str | None = None) -> str:
        """Create a container from *image_ref*, start it, and return its id.

        A container that was created but failed to start is removed again.
        """
        create_args = ["create"]
        if name:
            create_args.extend(["--name", name])
        create_args.append(image_ref)

        try:
            created = await self._run(self._command(*create_args))
        except EngineError as exc:
            raise SandboxRuntimeError(str(exc), stage="create") from exc
        container_id = created.stdout.splitlines()[-1] if created.stdout else ""
        if not container_id:
            raise SandboxRuntimeError("docker create returned no container id", stage="create")

        try:
            await self._run(self._command("start", container_id))
        except EngineError as exc:
            await self._run(self._command("rm", "--force", container_id), ignore_errors=True)
            raise SandboxRuntimeError(str(exc), stage="start") from exc

        logger.info("Started container %s from %s", container_id[:12], image_ref)
        return container_id

    async def logs(self, container_id: str) -> ProcessOutputStream:
        """Follow the combined stdout+stderr of a container."""
        cmd = self._command("logs", "--follow", container_id)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise SandboxRuntimeError(f"Failed to run docker: {exc}", stage="logs") from exc
        return ProcessOutputStream(proc, name=container_id[:12])

    async def stop(self, container_id: str) -> None:
        try:
            await self._run(self._command("stop", "--time", str(self._stop_timeout), container_id))
        except EngineError as exc:
            raise SandboxRuntimeError(str(exc), stage="stop") from exc

    async def remove(self, container_id: str) -> None:
        try:
            await self._run(self._command("rm", "--force", container_id))
        except EngineError as exc:
            raise SandboxRuntimeError(str(exc), stage="remove") from exc

    @staticmethod
    async def _run(cmd: list[str], *, ignore_errors: bool = False) -> _CommandOutput:
        """Run a docker CLI command and return its output."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_bytes, stderr_bytes = await proc.communicate()
        except OSError as exc:
            if ignore_errors:
                return _CommandOutput()
            raise EngineError(f"Failed to run docker: {exc}") from exc

        stdout = stdout_bytes.decode(errors="replace").strip() if stdout_bytes else ""
        stderr = stderr_bytes.decode(errors="replace").strip() if stderr_bytes else ""

        if proc.returncode != 0 and not ignore_errors:
            raise EngineError(
                f"{' '.join(cmd[3:5])} failed (rc={proc.returncode}): {stderr or stdout}",
                returncode=proc.returncode,
            )

        return _CommandOutput(stdout=stdout, stderr=stderr)


class _CommandOutput:
    """Simple container for CLI output."""

    __slots__ = ("stdout", "stderr")

    def __init__(self, stdout: str = "", stderr: str = "") -> None:
        self.stdout = stdout
        self.stderr = stderr
