"""Restore command for the backupagent CLI.

Commands:
- restore: Restore a backup (or only its attributes) into a directory
"""

from __future__ import annotations

import sys

import click

from backupagent.cli.config import init_cli
from backupagent.core.config import load_settings
from backupagent.core.passwords import load_password
from backupagent.core.paths import qualify_directory_path
from backupagent.core.types import BackupCanceledError
from backupagent.sync.restore import RestoreController


@click.command()
@click.argument("source", type=click.Path(file_okay=False))
@click.argument("dest", type=click.Path(file_okay=False))
@click.option(
    "--password",
    "-p",
    envvar="BACKUPAGENT_PASSWORD",
    default=None,
    help="Decryption password (defaults to the recorded password, if any).",
)
@click.option("--attributes-only", is_flag=True, help="Only restore times and attributes.")
@click.option("--from-database", is_flag=True, help="Restore attributes recorded in the database.")
@click.option("--write-database", is_flag=True, help="Record the restored files in the database.")
@click.option("--verbose", "-v", is_flag=True, help="Show progress messages.")
def restore(
    source: str,
    dest: str,
    password: str | None,
    attributes_only: bool,
    from_database: bool,
    write_database: bool,
    verbose: bool,
) -> None:
    """Restore the backup in SOURCE into DEST.

    A full restore requires DEST to be empty or absent.
    """
    data_dir = init_cli(verbose)
    source_path = qualify_directory_path(source)
    dest_path = qualify_directory_path(dest)

    # Settings and password belong to the backup pair (DEST was its origin)
    settings = load_settings(data_dir, dest_path, source_path)
    if password is None and not attributes_only:
        password = load_password(settings, data_dir)

    controller = RestoreController(
        source_path,
        dest_path,
        password=password,
        settings=settings,
        data_dir=data_dir,
        restore_attributes_from_database=from_database,
        copy_only_attributes=attributes_only,
        write_database=write_database,
    )
    try:
        results = controller.start()
    except BackupCanceledError:
        click.echo("Restore canceled", err=True)
        sys.exit(1)

    click.echo(results.message)
    click.echo(f"{len(results.successful_files)} files restored, {len(results.failed_files)} failed")
    if not results.is_success:
        sys.exit(1)
