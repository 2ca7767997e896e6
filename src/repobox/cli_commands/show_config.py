"""``repobox config`` — print the resolved configuration."""

from __future__ import annotations

import sys

import click
from rich.markup import escape

from repobox.cli_commands._output import console
from repobox.config import load_config
from repobox.errors import ConfigError


@click.command("config")
@click.option("--config", "config_path", type=click.Path(exists=True), default=None, help="YAML config file.")
def config_cmd(config_path: str | None) -> None:
    """Print the effective configuration as JSON."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {escape(str(exc))}")
        sys.exit(1)

    console.print_json(config.model_dump_json())
