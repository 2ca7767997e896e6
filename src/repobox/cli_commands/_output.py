"""Shared CLI output helpers."""

from __future__ import annotations

import logging
import sys

from rich.console import Console
from rich.table import Table

from repobox.models import Sandbox  # noqa: TC001
from repobox.multiplexer import printable_text

console = Console()

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str) -> None:
    """Send repobox logs to stderr so they never mix with sandbox output."""
    logging.basicConfig(level=level, format=_LOG_FORMAT, stream=sys.stderr, force=True)


async def write_chunk(chunk: bytes) -> None:
    """Sink that echoes sandbox output to the terminal."""
    console.out(printable_text(chunk), end="", highlight=False)


def print_sandbox(sandbox: Sandbox) -> None:
    """Pretty-print one sandbox record as a table."""
    table = Table(title=f"Sandbox {sandbox.id[:12]}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("owner", sandbox.owner_id)
    table.add_row("image", sandbox.image_ref)
    table.add_row("status", sandbox.status.value)
    table.add_row("stream", sandbox.stream_key or "-")
    table.add_row("source", _truncate(sandbox.source_ref or "-"))
    table.add_row("host", sandbox.host.endpoint if sandbox.host else "-")

    console.print(table)


def _truncate(text: str, max_len: int = 80) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
