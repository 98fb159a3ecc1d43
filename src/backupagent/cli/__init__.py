"""Command-line interface for backupagent.

This module provides the main CLI entry point and assembles all commands.

Commands:
- backup: Back up a directory (also: backupagent <origin> <dest>)
- restore: Restore a backup
- settings show / settings set: Inspect and change settings
- set-password: Record the encryption password of a pair
"""

from __future__ import annotations

import sys

import click

from backupagent.cli.backup import backup
from backupagent.cli.config import init_cli, setup_logging
from backupagent.cli.restore import restore
from backupagent.cli.settings import set_password, settings


@click.group()
@click.version_option(package_name="backupagent")
def cli() -> None:
    """backupagent - Differential, optionally encrypted directory backups."""


# Backup commands
cli.add_command(backup)
cli.add_command(restore)

# Settings commands
cli.add_command(settings)
cli.add_command(set_password)


def route_arguments(args: list[str]) -> list[str]:
    """Turn the batch form `<origin> <dest>` into `backup <origin> <dest>`."""
    if len(args) == 2 and args[0] not in cli.commands and not any(a.startswith("-") for a in args):
        return ["backup", *args]
    return args


def main(argv: list[str] | None = None) -> None:
    """Entry point for the CLI."""
    args = list(sys.argv[1:] if argv is None else argv)
    cli.main(args=route_arguments(args), prog_name="backupagent")


__all__ = [
    # Main entry points
    "cli",
    "main",
    "route_arguments",
    # Config utilities
    "init_cli",
    "setup_logging",
]
