"""Path canonicalization and data directory layout for backupagent.

This module provides:
- Canonical trailing-separator directory paths used as map keys
- Origin/destination path mapping
- Backup pair hashing (SHA-1 of the two canonical paths)
- Data directory resolution (per-pair documents live under Data/<hash>/)
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

DATA_DIR_ENV = "BACKUPAGENT_DATA_DIR"
DATA_SUBDIR = "Data"
TEMP_SUBDIR = "Temp"
LOGS_SUBDIR = "Logs"
LOCKS_SUBDIR = "Locks"


def qualify_directory_path(path: str | os.PathLike[str]) -> str:
    """Normalize a directory path to its canonical form.

    The result is absolute, has redundant separators and dot segments
    collapsed, and always ends with exactly one separator.

    Args:
        path: Directory path as typed by the user (may be relative).

    Returns:
        Canonical absolute directory path ending with os.sep.
    """
    text = os.fspath(path).strip()
    if not text:
        raise ValueError("Directory path must not be empty")
    full = os.path.abspath(os.path.expanduser(text))
    if not full.endswith(os.sep):
        full += os.sep
    return full


def map_path(path: str, from_base: str, to_base: str) -> str:
    """Rebase a path that lives under from_base onto to_base.

    Both bases must be canonical (trailing separator).
    """
    if not path.startswith(from_base) and path != from_base.rstrip(os.sep):
        raise ValueError(f"{path!r} is not located under {from_base!r}")
    return to_base + path[len(from_base):]


def relative_suffix(path: str, base: str) -> str:
    """Return the part of path below base, starting with the separator.

    Exclusion patterns are matched against this form (e.g. "/dir/file.txt").
    """
    return path[len(base) - 1:]


def compute_string_sha1(text: str) -> str:
    """Compute the lowercase hex SHA-1 of a UTF-8 string."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def compute_pair_hash(origin_base_dir_path: str, dest_base_dir_path: str) -> str:
    """Compute the identity hash of a backup pair."""
    return compute_string_sha1(origin_base_dir_path + dest_base_dir_path)


def get_data_dir() -> Path:
    """Get the data directory for backupagent.

    Returns:
        Path from $BACKUPAGENT_DATA_DIR, or ~/.backupagent.
    """
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".backupagent"


def get_data_directory_name(origin_base_dir_path: str, dest_base_dir_path: str) -> str:
    """Get the per-pair directory name, relative to the data directory."""
    return os.path.join(DATA_SUBDIR, compute_pair_hash(origin_base_dir_path, dest_base_dir_path))


def get_pair_data_dir(
    data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str
) -> Path:
    """Get the directory that holds the documents of a backup pair."""
    return data_dir / get_data_directory_name(origin_base_dir_path, dest_base_dir_path)


def get_temp_dir(data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str) -> Path:
    """Get the scratch directory of a backup pair."""
    return get_pair_data_dir(data_dir, origin_base_dir_path, dest_base_dir_path) / TEMP_SUBDIR


def get_log_dir(data_dir: Path) -> Path:
    """Get the directory that receives log files."""
    return data_dir / LOGS_SUBDIR


def get_lock_path(data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str) -> Path:
    """Get the lock file that guards a backup pair against concurrent runs."""
    pair_hash = compute_pair_hash(origin_base_dir_path, dest_base_dir_path)
    return data_dir / LOCKS_SUBDIR / f"{pair_hash}.lock"


def is_directory_empty(path: str) -> bool:
    """Check whether a directory is absent or has no entries."""
    if not os.path.isdir(path):
        return True
    with os.scandir(path) as entries:
        return next(entries, None) is None
