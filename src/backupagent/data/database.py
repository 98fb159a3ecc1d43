"""Backup metadata database.

This module provides:
- BackedUpFileData / BackedUpDirectoryData records
- BackupDatabase: per-pair maps of recorded metadata, persisted as compact
  JSON under Data/<hash>/Database.json
- load_database: load with identity check, falling back to a fresh database
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from backupagent.core.attributes import FileAttributes
from backupagent.core.paths import get_pair_data_dir, get_temp_dir
from backupagent.core.types import PersistenceError
from backupagent.data.writer import (
    DEFAULT_AUTO_SAVE_INTERVAL,
    PersistenceHelper,
    document_exists,
    dump_compact,
    read_document,
    replace_document,
)

logger = logging.getLogger(__name__)

DATABASE_FILE_NAME = "Database.json"
CHECKPOINT_FILE_NAME = "Database0.json.tmp"

NOT_RECORDED_SIZE = -1


def format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_attributes(value: int | None) -> FileAttributes | None:
    return FileAttributes(value) if value is not None else None


def _compact(entries: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in entries.items() if v is not None}


@dataclass
class BackedUpDirectoryData:
    """Recorded metadata of a backed-up directory."""

    creation_time: datetime | None = None
    last_write_time: datetime | None = None
    file_attributes: FileAttributes | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "c": format_time(self.creation_time),
                "w": format_time(self.last_write_time),
                "a": int(self.file_attributes) if self.file_attributes is not None else None,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackedUpDirectoryData:
        return cls(
            creation_time=parse_time(data.get("c")),
            last_write_time=parse_time(data.get("w")),
            file_attributes=_parse_attributes(data.get("a")),
        )


@dataclass
class BackedUpFileData:
    """Recorded metadata of a backed-up file.

    Only the fields required by the active comparison method and the
    attribute-copy setting are populated. origin_size uses -1 for
    "not recorded".
    """

    creation_time: datetime | None = None
    last_write_time: datetime | None = None
    origin_size: int = NOT_RECORDED_SIZE
    file_attributes: FileAttributes | None = None
    sha1: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "c": format_time(self.creation_time),
                "w": format_time(self.last_write_time),
                "o": self.origin_size if self.origin_size != NOT_RECORDED_SIZE else None,
                "a": int(self.file_attributes) if self.file_attributes is not None else None,
                "s": self.sha1,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackedUpFileData:
        return cls(
            creation_time=parse_time(data.get("c")),
            last_write_time=parse_time(data.get("w")),
            origin_size=int(data.get("o", NOT_RECORDED_SIZE)),
            file_attributes=_parse_attributes(data.get("a")),
            sha1=data.get("s"),
        )


class BackupDatabase:
    """Recorded metadata of everything backed up for one origin/destination pair.

    Keys are canonical origin paths; directory keys end with a separator.
    The maps are mutated by a single run thread. Auto-save works on a
    snapshot and goes through a temp file before replacing the document.
    """

    def __init__(
        self,
        origin_base_dir_path: str,
        dest_base_dir_path: str,
        data_dir: Path,
        directories: dict[str, BackedUpDirectoryData] | None = None,
        files: dict[str, BackedUpFileData] | None = None,
    ) -> None:
        self.origin_base_dir_path = origin_base_dir_path
        self.dest_base_dir_path = dest_base_dir_path
        self.data_dir = data_dir
        self.directories: dict[str, BackedUpDirectoryData] = directories if directories is not None else {}
        self.files: dict[str, BackedUpFileData] = files if files is not None else {}
        self._persistence = PersistenceHelper(lambda: self.path, self.to_dict, name="Database")

    @property
    def path(self) -> Path:
        return get_database_path(self.data_dir, self.origin_base_dir_path, self.dest_base_dir_path)

    @property
    def checkpoint_path(self) -> Path:
        return (
            get_temp_dir(self.data_dir, self.origin_base_dir_path, self.dest_base_dir_path)
            / CHECKPOINT_FILE_NAME
        )

    def to_dict(self) -> dict[str, Any]:
        # dict.copy() is atomic, so a concurrent insert cannot break iteration
        directories = self.directories.copy()
        files = self.files.copy()
        return {
            "ob": self.origin_base_dir_path,
            "db": self.dest_base_dir_path,
            "dd": {path: data.to_dict() for path, data in directories.items()},
            "fd": {path: data.to_dict() for path, data in files.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], data_dir: Path) -> BackupDatabase:
        return cls(
            origin_base_dir_path=data["ob"],
            dest_base_dir_path=data["db"],
            data_dir=data_dir,
            directories={
                path: BackedUpDirectoryData.from_dict(entry)
                for path, entry in data.get("dd", {}).items()
            },
            files={path: BackedUpFileData.from_dict(entry) for path, entry in data.get("fd", {}).items()},
        )

    @classmethod
    def load(cls, path: Path, data_dir: Path) -> BackupDatabase:
        """Load a database document.

        Raises:
            PersistenceError: If the document (and its .bac) is unreadable.
        """
        data = read_document(path)
        try:
            return cls.from_dict(data, data_dir)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise PersistenceError(f"Malformed database document {path}: {e}") from e

    def save(self) -> None:
        self._persistence.save()
        logger.info("Database saved: %d directories, %d files", len(self.directories), len(self.files))

    def checkpoint(self) -> None:
        """Write a snapshot to the temp location, then swap it in."""
        payload = dump_compact(self.to_dict())
        checkpoint = self.checkpoint_path
        checkpoint.parent.mkdir(parents=True, exist_ok=True)
        checkpoint.write_text(payload, encoding="utf-8")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        replace_document(checkpoint, self.path, make_backup=True)
        logger.debug("Database checkpoint written to %s", self.path)

    def start_auto_save(self, interval: float = DEFAULT_AUTO_SAVE_INTERVAL) -> None:
        self._persistence.start_auto_save(interval, action=self.checkpoint)

    def stop_auto_save(self) -> None:
        self._persistence.stop_auto_save()

    def delete(self) -> None:
        self._persistence.delete()

    def dispose(self) -> None:
        self._persistence.dispose()


def get_database_path(data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str) -> Path:
    return get_pair_data_dir(data_dir, origin_base_dir_path, dest_base_dir_path) / DATABASE_FILE_NAME


def load_database(
    origin_base_dir_path: str, dest_base_dir_path: str, data_dir: Path
) -> tuple[BackupDatabase, str | None]:
    """Load the database of a pair, or create an empty one.

    A loaded database must belong to the requested pair. A mismatch is
    retried once; if it persists, or the document is unreadable, a fresh
    database is returned along with an error message.

    Returns:
        Tuple of (database, error message or None).
    """
    path = get_database_path(data_dir, origin_base_dir_path, dest_base_dir_path)
    if not document_exists(path):
        return BackupDatabase(origin_base_dir_path, dest_base_dir_path, data_dir), None

    error: str | None = None
    for _attempt in range(2):
        try:
            database = BackupDatabase.load(path, data_dir)
        except PersistenceError as e:
            error = f"Failed to load database: {e}"
            break
        if (
            database.origin_base_dir_path == origin_base_dir_path
            and database.dest_base_dir_path == dest_base_dir_path
        ):
            logger.info(
                "Database loaded: %d directories, %d files",
                len(database.directories),
                len(database.files),
            )
            return database, None
        error = (
            f"Database at {path} belongs to {database.origin_base_dir_path} -> "
            f"{database.dest_base_dir_path}, starting a new one"
        )
        logger.warning("Database identity mismatch, reloading: %s", path)

    logger.error(error)
    return BackupDatabase(origin_base_dir_path, dest_base_dir_path, data_dir), error


def read_database_file(path: Path, data_dir: Path) -> BackupDatabase | None:
    """Read a database document, returning None if it cannot be read."""
    if not document_exists(path):
        return None
    try:
        return BackupDatabase.load(path, data_dir)
    except PersistenceError:
        logger.exception("Could not read database %s", path)
        return None
