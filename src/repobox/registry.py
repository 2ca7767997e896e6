"""SandboxRegistry — the in-memory table of sandbox records.

Records are copied on the way in and on the way out, so no caller ever holds
a reference into the table.  All access goes through the methods below under
a single lock.
"""

from __future__ import annotations

import logging
import threading

from repobox.errors import NotFoundError, RequestValidationError
from repobox.models import Sandbox, SandboxStatus, utcnow

logger = logging.getLogger(__name__)


class SandboxRegistry:
    """Thread-safe table of :class:`Sandbox` records keyed by id."""

    def __init__(self) -> None:
        self._records: dict[str, Sandbox] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, sandbox_id: object) -> bool:
        with self._lock:
            return sandbox_id in self._records

    def put(self, sandbox: Sandbox) -> None:
        """Insert or replace the record for ``sandbox.id``."""
        with self._lock:
            self._records[sandbox.id] = sandbox.model_copy(deep=True)
        logger.debug("Registered sandbox %s (owner=%s)", sandbox.id, sandbox.owner_id)

    def get(self, sandbox_id: str) -> Sandbox | None:
        """Return a snapshot of the record, or ``None`` if unknown."""
        with self._lock:
            record = self._records.get(sandbox_id)
            return record.model_copy(deep=True) if record is not None else None

    def require(self, sandbox_id: str) -> Sandbox:
        """Like :meth:`get` but raise :class:`NotFoundError` for unknown ids."""
        record = self.get(sandbox_id)
        if record is None:
            raise NotFoundError("sandbox", sandbox_id)
        return record

    def list_by_owner(self, owner_id: str) -> list[Sandbox]:
        with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._records.values()
                if record.owner_id == owner_id
            ]

    def all(self) -> list[Sandbox]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.values()]

    def update_status(self, sandbox_id: str, status: SandboxStatus) -> Sandbox:
        """Move a record to *status* and return the updated snapshot.

        Raises:
            NotFoundError: The id is not (or no longer) registered.
            RequestValidationError: The transition would go backwards.
        """
        with self._lock:
            record = self._records.get(sandbox_id)
            if record is None:
                raise NotFoundError("sandbox", sandbox_id)
            if not record.status.can_transition_to(status):
                msg = f"Invalid transition for sandbox {sandbox_id}: {record.status.value} -> {status.value}"
                raise RequestValidationError(msg)
            record.status = status
            record.updated_at = utcnow()
            snapshot = record.model_copy(deep=True)
        logger.debug("Sandbox %s is now %s", sandbox_id, status.value)
        return snapshot

    def delete(self, sandbox_id: str) -> Sandbox | None:
        """Remove the record and return it, or ``None`` if it was absent."""
        with self._lock:
            return self._records.pop(sandbox_id, None)

    def find_by_stream(self, stream_key: str) -> Sandbox | None:
        """Return the sandbox whose output is published under *stream_key*."""
        with self._lock:
            for record in self._records.values():
                if record.stream_key == stream_key:
                    return record.model_copy(deep=True)
        return None
