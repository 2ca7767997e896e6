"""repobox CLI entrypoint."""

from __future__ import annotations

import click

from repobox import __version__


@click.group()
@click.version_option(version=__version__, prog_name="repobox")
def main() -> None:
    """repobox — run a repository's Dockerfile as a sandbox."""


# Register subcommands
from repobox.cli_commands import register_commands  # noqa: E402

register_commands(main)

if __name__ == "__main__":
    main()
