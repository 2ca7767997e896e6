"""Job model for the orchestration queue."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from repobox.errors import RequestValidationError
from repobox.models import HostMode, utcnow


class JobKind(str, Enum):
    CREATE = "create"
    STOP = "stop"
    REMOVE = "remove"
    INSPECT = "inspect"


@dataclass
class Job:
    """A queued unit of orchestration work.

    ``result`` is a one-shot future owned by this job alone: the worker that
    dequeues it resolves it exactly once, with a value or an exception.
    Jobs must be built inside a running event loop.
    """

    kind: JobKind
    owner_id: str = ""
    image_ref: str | None = None
    sandbox_id: str | None = None
    source_ref: str | None = None
    host_mode: HostMode | None = None
    created_at: datetime = field(default_factory=utcnow)
    result: asyncio.Future[Any] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
        repr=False,
        compare=False,
    )

    def validate(self) -> None:
        """Raise :class:`RequestValidationError` if required fields are missing."""
        if self.kind is JobKind.CREATE:
            if not self.owner_id:
                raise RequestValidationError("create job requires owner_id")
            if not self.source_ref:
                raise RequestValidationError("create job requires source_ref")
        elif not self.sandbox_id:
            raise RequestValidationError(f"{self.kind.value} job requires sandbox_id")

    def resolve(self, value: Any) -> bool:
        """Deliver *value*; returns ``False`` if the future was already done."""
        if self.result.done():
            return False
        self.result.set_result(value)
        return True

    def fail(self, error: BaseException) -> bool:
        """Deliver *error*; returns ``False`` if the future was already done."""
        if self.result.done():
            return False
        self.result.set_exception(error)
        return True

    async def wait(self, timeout: float | None = None) -> Any:
        """Await the job's outcome, re-raising its error."""
        return await asyncio.wait_for(asyncio.shield(self.result), timeout=timeout)
