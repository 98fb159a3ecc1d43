"""Backup command for the backupagent CLI.

Commands:
- backup: Back up an origin directory into a destination directory
"""

from __future__ import annotations

import os
import sys

import click

from backupagent.cli.config import init_cli
from backupagent.core.config import load_settings
from backupagent.core.passwords import load_password
from backupagent.core.paths import qualify_directory_path
from backupagent.core.types import BackupCanceledError
from backupagent.sync.manager import ALREADY_RUNNING_MESSAGE, BackupManager


@click.command()
@click.argument("origin", type=click.Path(file_okay=False))
@click.argument("dest", type=click.Path(file_okay=False))
@click.option(
    "--password",
    "-p",
    envvar="BACKUPAGENT_PASSWORD",
    default=None,
    help="Encryption password (defaults to the recorded password, if any).",
)
@click.option("--verbose", "-v", is_flag=True, help="Show progress messages.")
def backup(origin: str, dest: str, password: str | None, verbose: bool) -> None:
    """Back up ORIGIN into DEST.

    Only files changed since the last run are copied. Runs without any
    prompt so it can be scheduled; exits with status 1 on failure.
    """
    data_dir = init_cli(verbose)
    origin_path = qualify_directory_path(origin)
    dest_path = qualify_directory_path(dest)

    if not os.path.isdir(origin_path):
        click.echo(f"Error: Origin directory not found: {origin_path}", err=True)
        sys.exit(1)

    settings = load_settings(data_dir, origin_path, dest_path)
    if password is None:
        password = load_password(settings, data_dir)

    manager = BackupManager(data_dir)
    try:
        results = manager.start_backup(origin_path, dest_path, password=password, settings=settings)
    except BackupCanceledError:
        click.echo("Backup canceled", err=True)
        sys.exit(1)

    if not results.is_finished and results.message == ALREADY_RUNNING_MESSAGE:
        click.echo(results.message)
        return

    click.echo(results.message)
    click.echo(results.summary())
    if not results.is_success:
        sys.exit(1)
