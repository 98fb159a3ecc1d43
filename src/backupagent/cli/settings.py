"""Settings commands for the backupagent CLI.

Commands:
- settings show: Print the settings of a pair (or the defaults)
- settings set: Change one setting of a pair
- set-password: Record the encryption password of a pair
"""

from __future__ import annotations

import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any

import click

from backupagent.cli.config import init_cli
from backupagent.core.config import BackupSettings, load_default_settings, load_settings
from backupagent.core.passwords import save_password
from backupagent.core.paths import qualify_directory_path
from backupagent.core.types import (
    ComparisonMethod,
    CompressAlgorithm,
    CompressionLevel,
    ConfigurationError,
    PasswordProtectionScope,
    PersistenceError,
    SymbolicLinkHandling,
    VersioningMethod,
)

READ_ONLY_KEYS = {"origin_base_dir_path", "dest_base_dir_path", "protected_password"}

_BOOL_VALUES = {
    "true": True,
    "yes": True,
    "on": True,
    "1": True,
    "false": False,
    "no": False,
    "off": False,
    "0": False,
}

_ENUMS: dict[str, type[Enum]] = {
    "versioning": VersioningMethod,
    "password_protection_scope": PasswordProtectionScope,
    "compression_level": CompressionLevel,
    "compress_algorithm": CompressAlgorithm,
    "symbolic_link": SymbolicLinkHandling,
}


def _parse_comparison_method(raw: str) -> ComparisonMethod:
    if raw.isdigit():
        return ComparisonMethod(int(raw))
    method = ComparisonMethod.NO_COMPARISON
    for name in raw.replace(",", "|").split("|"):
        name = name.strip().upper().replace("-", "_")
        if not name:
            continue
        try:
            method |= ComparisonMethod[name]
        except KeyError:
            raise ValueError(f"unknown comparison method {name!r}") from None
    return method


def parse_setting_value(key: str, raw: str) -> Any:
    """Convert a command-line value to the type of a settings field.

    Raises:
        ValueError: If the key is unknown or the value does not fit.
    """
    defaults = BackupSettings()
    if key in READ_ONLY_KEYS or key.startswith("_") or not hasattr(defaults, key):
        raise ValueError(f"unknown or read-only setting {key!r}")

    if key == "comparison_method":
        return _parse_comparison_method(raw)
    if key in _ENUMS:
        enum_type = _ENUMS[key]
        normalized = raw.strip().lower().replace("-", "_")
        for member in enum_type:
            if normalized in (member.value, member.name.lower()):
                return member
        choices = ", ".join(m.value for m in enum_type)
        raise ValueError(f"{key} must be one of: {choices}")

    current = getattr(defaults, key)
    if isinstance(current, bool):
        try:
            return _BOOL_VALUES[raw.strip().lower()]
        except KeyError:
            raise ValueError(f"{key} must be true or false") from None
    if isinstance(current, int):
        return int(raw)
    if key == "revisions_dir_path":
        return qualify_directory_path(raw) if raw.strip() else None
    return raw


def _pair_settings(data_dir: Path, origin: str, dest: str) -> BackupSettings:
    origin_path = qualify_directory_path(origin)
    dest_path = qualify_directory_path(dest)
    settings = load_settings(data_dir, origin_path, dest_path)
    if settings.is_default:
        settings = settings.to_local(origin_path, dest_path)
    return settings


@click.group()
def settings() -> None:
    """Show or change backup settings."""


@settings.command("show")
@click.argument("origin", required=False)
@click.argument("dest", required=False)
def show(origin: str | None, dest: str | None) -> None:
    """Print the settings of ORIGIN -> DEST, or the defaults."""
    data_dir = init_cli()
    if origin is None and dest is None:
        current = load_default_settings(data_dir)
    elif origin is None or dest is None:
        click.echo("Error: Give both ORIGIN and DEST, or neither.", err=True)
        sys.exit(1)
    else:
        current = _pair_settings(data_dir, origin, dest)

    data = current.to_dict()
    data["comparison_method"] = ComparisonMethod(data["comparison_method"]).name
    if data["protected_password"]:
        data["protected_password"] = "<recorded>"
    click.echo(json.dumps(data, indent=2))


@settings.command("set")
@click.argument("origin")
@click.argument("dest")
@click.argument("key")
@click.argument("value")
def set_value(origin: str, dest: str, key: str, value: str) -> None:
    """Set KEY to VALUE in the settings of ORIGIN -> DEST."""
    data_dir = init_cli()
    current = _pair_settings(data_dir, origin, dest)
    try:
        setattr(current, key, parse_setting_value(key, value))
        current.validate()
    except (ValueError, ConfigurationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    try:
        current.save(data_dir)
    except PersistenceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"{key} updated")


@click.command("set-password")
@click.argument("origin")
@click.argument("dest")
@click.option("--clear", is_flag=True, help="Forget the recorded password.")
def set_password(origin: str, dest: str, clear: bool) -> None:
    """Record the encryption password used for ORIGIN -> DEST."""
    data_dir = init_cli()
    current = _pair_settings(data_dir, origin, dest)

    if clear:
        save_password(current, None, data_dir)
        click.echo("Recorded password removed")
        return

    password = click.prompt("Encryption password", hide_input=True, confirmation_prompt=True)
    current.record_password = True
    if not save_password(current, password, data_dir):
        click.echo("Error: Could not record the password", err=True)
        sys.exit(1)
    click.echo("Password recorded")
