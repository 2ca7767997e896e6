"""OutputMultiplexer — keyed registry of live sandbox output streams.

The pipeline publishes each running sandbox's output under a stream key; one
consumer per key calls :meth:`OutputMultiplexer.drain` to fan the bytes out
to its sinks.  Storing under a key that is already taken closes the
displaced stream.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from repobox.engine.streams import OutputStream
from repobox.errors import NotFoundError

logger = logging.getLogger(__name__)

Sink = Callable[[bytes], Awaitable[None]]


class RecoverableSinkError(Exception):
    """Raised by a sink for a failure that should not stop the drain."""


@dataclass
class DrainResult:
    """Outcome of one :meth:`OutputMultiplexer.drain` loop."""

    key: str
    bytes_read: int = 0
    chunks: int = 0
    error: BaseException | None = None
    read_failed: bool = False

    @property
    def exhausted(self) -> bool:
        """``True`` if the stream ended normally."""
        return self.error is None


def printable_text(chunk: bytes) -> str:
    """Decode *chunk*, keeping printable characters plus newlines and tabs."""
    text = chunk.decode(errors="replace")
    return "".join(ch for ch in text if ch.isprintable() or ch in "\n\r\t")


class OutputMultiplexer:
    """Thread-safe ``key -> OutputStream`` table with a drain loop."""

    def __init__(self, chunk_size: int = 1024) -> None:
        self._streams: dict[str, OutputStream] = {}
        self._lock = threading.Lock()
        self._chunk_size = chunk_size

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._streams

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._streams)

    async def store(self, key: str, stream: OutputStream) -> None:
        """Publish *stream* under *key*, closing any stream it displaces."""
        with self._lock:
            previous = self._streams.get(key)
            self._streams[key] = stream
        if previous is not None and previous is not stream:
            logger.warning("Stream key %s re-used; closing the previous stream", key)
            await previous.close()

    def load(self, key: str) -> OutputStream:
        """Return the stream for *key*.

        Raises:
            NotFoundError: Nothing is stored under *key*.
        """
        with self._lock:
            stream = self._streams.get(key)
        if stream is None:
            raise NotFoundError("stream", key)
        return stream

    def discard(self, key: str, stream: OutputStream | None = None) -> OutputStream | None:
        """Drop *key*; with *stream* given, only if it is still the one stored."""
        with self._lock:
            current = self._streams.get(key)
            if current is None or (stream is not None and current is not stream):
                return None
            return self._streams.pop(key)

    async def drain(self, key: str, *sinks: Sink) -> DrainResult:
        """Forward every chunk of the stream under *key* to *sinks* in order.

        Stops at end of stream, on the first read error, or on the first sink
        error that is not a :class:`RecoverableSinkError`.  The stream is
        closed and unpublished on every exit path.

        Raises:
            NotFoundError: Nothing is stored under *key*.
        """
        stream = self.load(key)
        result = DrainResult(key=key)
        try:
            while result.error is None:
                try:
                    chunk = await stream.read(self._chunk_size)
                except Exception as exc:
                    logger.warning("Read from stream %s failed: %s", key, exc)
                    result.error = exc
                    result.read_failed = True
                    break
                if not chunk:
                    break
                result.chunks += 1
                result.bytes_read += len(chunk)
                for sink in sinks:
                    try:
                        await sink(chunk)
                    except RecoverableSinkError as exc:
                        logger.warning("Sink for stream %s failed, continuing: %s", key, exc)
                    except Exception as exc:
                        logger.warning("Sink for stream %s failed, stopping: %s", key, exc)
                        result.error = exc
                        break
        finally:
            self.discard(key, stream)
            await stream.close()
        logger.debug("Drained stream %s: %d bytes in %d chunks", key, result.bytes_read, result.chunks)
        return result
