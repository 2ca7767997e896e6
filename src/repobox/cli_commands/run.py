"""``repobox run`` — build a repository and stream its sandbox output."""

from __future__ import annotations

import asyncio
import sys

import click
from rich.markup import escape

from repobox.cli_commands._output import console, print_sandbox, setup_logging, write_chunk
from repobox.config import RepoboxConfig, load_config
from repobox.errors import ConfigError, RepoboxError
from repobox.models import HostMode
from repobox.service import SandboxService


@click.command()
@click.argument("owner")
@click.argument("repo_url")
@click.option("--image", "image_ref", default=None, help="Tag for the built image.")
@click.option("--remote", is_flag=True, help="Build and run on a fresh remote host.")
@click.option("--config", "config_path", type=click.Path(exists=True), default=None, help="YAML config file.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override the configured log level.",
)
@click.option("--telemetry", is_flag=True, help="Export traces to the console.")
@click.option("--keep", is_flag=True, help="Do not remove the container after its output ends.")
def run(
    owner: str,
    repo_url: str,
    image_ref: str | None,
    remote: bool,
    config_path: str | None,
    log_level: str | None,
    telemetry: bool,
    keep: bool,
) -> None:
    """Build REPO_URL's Dockerfile and run it as a sandbox owned by OWNER."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {escape(str(exc))}")
        sys.exit(1)

    setup_logging((log_level or config.log_level).upper())

    if telemetry or config.telemetry.enabled:
        from repobox.telemetry import configure_telemetry

        try:
            configure_telemetry(
                export_to_console=telemetry,
                otlp_endpoint=config.telemetry.otlp_endpoint,
            )
        except ImportError as exc:
            console.print(f"[red]Telemetry error:[/red] {escape(str(exc))}")
            sys.exit(1)

    mode = HostMode.REMOTE if remote else None
    try:
        asyncio.run(_run_sandbox(config, owner, repo_url, image_ref, mode=mode, keep=keep))
    except RepoboxError as exc:
        console.print(f"[red]Run failed:[/red] {escape(str(exc))}")
        sys.exit(1)


async def _run_sandbox(
    config: RepoboxConfig,
    owner: str,
    repo_url: str,
    image_ref: str | None,
    *,
    mode: HostMode | None,
    keep: bool,
) -> None:
    async with SandboxService(config) as service:
        result = await service.submit_create(owner, repo_url, image_ref, mode=mode)
        print_sandbox(result.sandbox)

        drained = await service.attach(result.stream_key, write_chunk)
        if not drained.exhausted:
            console.print(f"[yellow]Output stream ended early:[/yellow] {escape(str(drained.error))}")

        if keep:
            console.print(f"Sandbox {result.sandbox.id[:12]} kept")
            return
        await service.submit_remove(result.sandbox.id)
        console.print(f"[green]Sandbox {result.sandbox.id[:12]} removed[/green]")
