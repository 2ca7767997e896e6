"""Data models shared across the orchestration engine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SandboxStatus(str, Enum):
    """Lifecycle states of a sandbox.

    ``CREATED -> RUNNING -> STOPPED -> REMOVED`` is monotonic; ``ERROR`` is
    reachable from any state that is not ``REMOVED``.
    """

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"
    ERROR = "error"

    def can_transition_to(self, target: SandboxStatus) -> bool:
        if self is SandboxStatus.REMOVED:
            return False
        if target is SandboxStatus.ERROR or target is self:
            return True
        if self is SandboxStatus.ERROR:
            return target is SandboxStatus.REMOVED
        return _ORDER.index(target) > _ORDER.index(self)


_ORDER = [
    SandboxStatus.CREATED,
    SandboxStatus.RUNNING,
    SandboxStatus.STOPPED,
    SandboxStatus.REMOVED,
]


class HostMode(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class HostLease(BaseModel):
    """Where a container engine is reachable."""

    mode: HostMode
    endpoint: str = Field(..., description="Engine address, e.g. tcp://1.2.3.4:2375.")
    remote_instance_id: str | None = None


class BuildSource(BaseModel):
    """A fetched repository ready to be archived into a build context."""

    repo_url: str
    local_clone_path: Path
    spec_path: Path = Field(..., description="Absolute path of the located build specification.")
    context_root: Path = Field(..., description="Directory the build context is rooted at.")

    @property
    def spec_relative_path(self) -> str:
        """The build specification's path relative to :attr:`context_root`."""
        return self.spec_path.relative_to(self.context_root).as_posix()

    @property
    def context_subdir(self) -> str:
        """:attr:`context_root` relative to the clone, ``"."`` for the root."""
        return self.context_root.relative_to(self.local_clone_path).as_posix()


class Sandbox(BaseModel):
    """A built-and-running container tracked by the registry."""

    id: str
    owner_id: str
    image_ref: str
    status: SandboxStatus = SandboxStatus.CREATED
    stream_key: str | None = None
    source_ref: str | None = None
    host: HostLease | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
