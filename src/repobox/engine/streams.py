"""Live byte streams produced by the container engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class OutputStream(Protocol):
    """A readable, closable byte stream.

    ``read`` returns ``b""`` once the stream is exhausted.  ``close`` must be
    idempotent.
    """

    async def read(self, n: int) -> bytes:
        ...

    async def close(self) -> None:
        ...


class ProcessOutputStream:
    """Stdout of a long-running subprocess (e.g. ``docker logs --follow``).

    Closing terminates the process if it is still running.
    """

    def __init__(self, process: asyncio.subprocess.Process, *, name: str = "") -> None:
        if process.stdout is None:
            msg = "process must be started with stdout=PIPE"
            raise ValueError(msg)
        self._process = process
        self._name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, n: int) -> bytes:
        if self._closed:
            return b""
        assert self._process.stdout is not None
        return await self._process.stdout.read(n)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
        await self._process.wait()
        logger.debug("Closed output stream %s", self._name or self._process.pid)
