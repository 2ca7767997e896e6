"""Shared error types for sandbox orchestration.

Every failure surfaced to a caller is one of the typed errors below.  Errors
raised by collaborators (the ``docker``/``git``/``aws`` CLIs, HTTP probes) are
wrapped with the stage they occurred in so the root cause stays visible.
"""

from __future__ import annotations


class RepoboxError(Exception):
    """Base error for all orchestration failures."""

    def __init__(self, message: str = "", *, stage: str | None = None) -> None:
        self.message = message
        self.stage = stage
        text = message or self.__class__.__name__
        super().__init__(f"{stage}: {text}" if stage else text)


class RequestValidationError(RepoboxError):
    """Malformed input, rejected before any resource is acquired."""


class ConfigError(RequestValidationError):
    """The configuration file could not be read or failed validation."""


class FetchError(RepoboxError):
    """Cloning, locating the build specification, or archiving failed."""


class ProvisionError(RepoboxError):
    """A remote host could not be brought up."""


class BuildError(RepoboxError):
    """The container engine failed to build an image from the context."""

    def __init__(
        self,
        message: str = "",
        *,
        stage: str | None = "build",
        build_log: str = "",
    ) -> None:
        self.build_log = build_log
        super().__init__(message, stage=stage)


class SandboxRuntimeError(RepoboxError):
    """Creating or controlling a container failed after a successful build."""


class QueueFullError(RepoboxError):
    """The job backlog stayed full for the whole enqueue timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Job queue is full (waited {timeout}s)")


class NotFoundError(RepoboxError):
    """Unknown sandbox id or stream key."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class EngineError(RepoboxError):
    """A container engine command exited unsuccessfully."""

    def __init__(self, detail: str = "", *, returncode: int | None = None) -> None:
        self.detail = detail
        self.returncode = returncode
        super().__init__("Engine error" + (f": {detail}" if detail else ""))


class ComputeAPIError(RepoboxError):
    """A remote compute API call failed.

    ``code`` carries the provider's error code (e.g.
    ``InvalidPermission.Duplicate``) when one could be parsed.
    """

    def __init__(self, detail: str = "", *, code: str | None = None) -> None:
        self.detail = detail
        self.code = code
        super().__init__("Compute API error" + (f" ({code})" if code else "") + (f": {detail}" if detail else ""))


class QueueClosedError(RepoboxError):
    """The job queue is not running (never started, or stopped)."""
