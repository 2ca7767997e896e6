"""CLI subcommand registration."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import click


def register_commands(cli: click.Group) -> None:
    """Register all subcommands on the CLI group."""
    from repobox.cli_commands.run import run
    from repobox.cli_commands.show_config import config_cmd

    cli.add_command(run)
    cli.add_command(config_cmd)
