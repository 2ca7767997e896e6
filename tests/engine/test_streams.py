"""Tests for ProcessOutputStream."""

from __future__ import annotations

import asyncio
import sys

import pytest

from repobox.engine.streams import OutputStream, ProcessOutputStream

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


async def _spawn(script: str) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        "sh", "-c", script, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT
    )


class TestProcessOutputStream:
    async def test_reads_until_exhausted(self) -> None:
        stream = ProcessOutputStream(await _spawn("echo hello; echo oops >&2"))
        data = b""
        while chunk := await stream.read(1024):
            data += chunk
        await stream.close()

        assert b"hello" in data
        assert b"oops" in data

    async def test_close_terminates_running_process(self) -> None:
        proc = await _spawn("sleep 30")
        stream = ProcessOutputStream(proc, name="sleeper")

        await stream.close()

        assert proc.returncode is not None
        assert stream.closed
        assert await stream.read(10) == b""

    async def test_close_is_idempotent(self) -> None:
        stream = ProcessOutputStream(await _spawn("true"))
        await stream.close()
        await stream.close()
        assert stream.closed

    async def test_requires_stdout_pipe(self) -> None:
        proc = await asyncio.create_subprocess_exec("true")
        await proc.wait()
        with pytest.raises(ValueError, match="stdout=PIPE"):
            ProcessOutputStream(proc)

    async def test_satisfies_protocol(self) -> None:
        stream = ProcessOutputStream(await _spawn("true"))
        assert isinstance(stream, OutputStream)
        await stream.close()
