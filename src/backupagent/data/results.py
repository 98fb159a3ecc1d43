"""Outcome of a backup or restore run.

This module provides:
- BackupResults: success/finished flags, a progress message and path sets
- Listener registration for message changes and the finished transition
- Persistence of the results document under Data/<hash>/BackupResults.json
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from backupagent.core.paths import get_pair_data_dir
from backupagent.core.types import PersistenceError
from backupagent.data.writer import PersistenceHelper, document_exists, read_document

logger = logging.getLogger(__name__)

RESULTS_FILE_NAME = "BackupResults.json"

MessageListener = Callable[["BackupResults", str], None]
FinishedListener = Callable[["BackupResults"], None]


class BackupResults:
    """Mutable result record of one run.

    The message and the finished flag notify registered listeners.
    Finished listeners fire exactly once, when is_finished turns true.
    """

    def __init__(
        self,
        origin_base_dir_path: str | None = None,
        dest_base_dir_path: str | None = None,
        data_dir: Path | None = None,
        is_success: bool = False,
        is_finished: bool = False,
        message: str = "",
    ) -> None:
        self.origin_base_dir_path = origin_base_dir_path
        self.dest_base_dir_path = dest_base_dir_path
        self.data_dir = data_dir
        self.is_success = is_success
        self._is_finished = is_finished
        self._message = message
        self._finished_notified = is_finished
        self._message_listeners: list[MessageListener] = []
        self._finished_listeners: list[FinishedListener] = []

        self.successful_files: set[str] = set()
        self.successful_directories: set[str] = set()
        self.unchanged_files: set[str] | None = set()
        self.failed_files: set[str] = set()
        self.failed_directories: set[str] = set()
        self.deleted_files: set[str] | None = None
        self.deleted_directories: set[str] | None = None

        self._persistence = PersistenceHelper(self._document_path, self.to_dict, name="Results")

    # Listeners

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        if listener in self._message_listeners:
            self._message_listeners.remove(listener)

    def add_finished_listener(self, listener: FinishedListener) -> None:
        self._finished_listeners.append(listener)

    def remove_finished_listener(self, listener: FinishedListener) -> None:
        if listener in self._finished_listeners:
            self._finished_listeners.remove(listener)

    @property
    def message(self) -> str:
        return self._message

    @message.setter
    def message(self, value: str) -> None:
        self._message = value
        for listener in list(self._message_listeners):
            try:
                listener(self, value)
            except Exception:
                logger.exception("Message listener failed")

    @property
    def is_finished(self) -> bool:
        return self._is_finished

    @is_finished.setter
    def is_finished(self, value: bool) -> None:
        self._is_finished = value
        if value and not self._finished_notified:
            self._finished_notified = True
            for listener in list(self._finished_listeners):
                try:
                    listener(self)
                except Exception:
                    logger.exception("Finished listener failed")

    # Result sets

    def reset(self, track_unchanged: bool, track_deleted: bool) -> None:
        """Start a fresh run: clear every path set."""
        self.is_success = False
        self.successful_files = set()
        self.successful_directories = set()
        self.unchanged_files = set() if track_unchanged else None
        self.failed_files = set()
        self.failed_directories = set()
        self.deleted_files = set() if track_deleted else None
        self.deleted_directories = set() if track_deleted else None

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_files or self.failed_directories)

    def summary(self) -> str:
        parts = [
            f"{len(self.successful_files)} copied",
            f"{len(self.unchanged_files) if self.unchanged_files is not None else 0} unchanged",
            f"{len(self.failed_files) + len(self.failed_directories)} failed",
        ]
        if self.deleted_files is not None:
            deleted = len(self.deleted_files) + len(self.deleted_directories or ())
            parts.append(f"{deleted} deleted")
        return ", ".join(parts)

    # Persistence

    def _document_path(self) -> Path | None:
        if self.data_dir is None or self.origin_base_dir_path is None or self.dest_base_dir_path is None:
            return None
        return get_results_path(self.data_dir, self.origin_base_dir_path, self.dest_base_dir_path)

    def to_dict(self) -> dict[str, Any]:
        def listing(paths: set[str] | None) -> list[str] | None:
            return sorted(paths) if paths is not None else None

        return {
            "origin_base_dir_path": self.origin_base_dir_path,
            "dest_base_dir_path": self.dest_base_dir_path,
            "is_success": self.is_success,
            "is_finished": self.is_finished,
            "message": self.message,
            "successful_files": listing(self.successful_files),
            "successful_directories": listing(self.successful_directories),
            "unchanged_files": listing(self.unchanged_files),
            "failed_files": listing(self.failed_files),
            "failed_directories": listing(self.failed_directories),
            "deleted_files": listing(self.deleted_files),
            "deleted_directories": listing(self.deleted_directories),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], data_dir: Path | None = None) -> BackupResults:
        def as_set(key: str) -> set[str] | None:
            value = data.get(key)
            return set(value) if value is not None else None

        results = cls(
            origin_base_dir_path=data.get("origin_base_dir_path"),
            dest_base_dir_path=data.get("dest_base_dir_path"),
            data_dir=data_dir,
            is_success=bool(data.get("is_success", False)),
            is_finished=bool(data.get("is_finished", False)),
            message=data.get("message", ""),
        )
        results.successful_files = as_set("successful_files") or set()
        results.successful_directories = as_set("successful_directories") or set()
        results.unchanged_files = as_set("unchanged_files")
        results.failed_files = as_set("failed_files") or set()
        results.failed_directories = as_set("failed_directories") or set()
        results.deleted_files = as_set("deleted_files")
        results.deleted_directories = as_set("deleted_directories")
        return results

    def save(self) -> None:
        """Persist the results document (no-op when the pair is unknown)."""
        self._persistence.save()


def get_results_path(data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str) -> Path:
    return get_pair_data_dir(data_dir, origin_base_dir_path, dest_base_dir_path) / RESULTS_FILE_NAME


def load_results(
    data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str
) -> BackupResults | None:
    """Load the last saved results of a pair, if any."""
    path = get_results_path(data_dir, origin_base_dir_path, dest_base_dir_path)
    if not document_exists(path):
        return None
    try:
        return BackupResults.from_dict(read_document(path), data_dir)
    except PersistenceError:
        logger.exception("Could not read results %s", path)
        return None
