"""Crash-safe persistence of JSON documents.

This module provides:
- write_document: serialize to <path>.tmp, keep the previous version as
  <path>.bac, atomically replace <path>
- read_document: parse <path>, falling back to <path>.bac once
- PersistenceHelper: save lock, explicit save and interval auto-save
  (APScheduler) composed into settings, database and results objects
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backupagent.core.types import PersistenceError

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"
BACKUP_SUFFIX = ".bac"
DEFAULT_AUTO_SAVE_INTERVAL = 60.0  # seconds


def _with_suffix(path: Path, suffix: str) -> Path:
    return path.with_name(path.name + suffix)


def dump_compact(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def write_document(path: Path, payload: Any, make_backup: bool = True) -> None:
    """Atomically write a JSON document.

    The payload goes to <path>.tmp first. When make_backup is set, the
    current <path> is copied to <path>.bac before the tmp file replaces it,
    so <path> always holds either the old or the new version.

    Raises:
        PersistenceError: If the document cannot be written. The existing
            <path> is left untouched.
    """
    tmp_path = _with_suffix(path, TMP_SUFFIX)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(dump_compact(payload))
            f.flush()
            os.fsync(f.fileno())
        replace_document(tmp_path, path, make_backup)
    except (OSError, TypeError, ValueError) as e:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def replace_document(source: Path, path: Path, make_backup: bool = True) -> None:
    """Move a fully written file over path, keeping the previous version as .bac."""
    if make_backup and path.exists():
        backup_path = _with_suffix(path, BACKUP_SUFFIX)
        backup_tmp = _with_suffix(backup_path, TMP_SUFFIX)
        shutil.copyfile(path, backup_tmp)
        os.replace(backup_tmp, backup_path)
    os.replace(source, path)


def _load(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def read_document(path: Path) -> Any:
    """Read a JSON document written by write_document.

    Falls back to <path>.bac when <path> is missing, unreadable or corrupt.

    Raises:
        PersistenceError: If neither <path> nor <path>.bac can be parsed.
    """
    try:
        return _load(path)
    except (OSError, ValueError) as e:
        backup_path = _with_suffix(path, BACKUP_SUFFIX)
        logger.warning("Could not read %s (%s), trying %s", path, e, backup_path.name)
        try:
            return _load(backup_path)
        except (OSError, ValueError) as backup_error:
            raise PersistenceError(f"Failed to read {path}: {e}") from backup_error


def document_exists(path: Path) -> bool:
    return path.exists() or _with_suffix(path, BACKUP_SUFFIX).exists()


def delete_document(path: Path) -> None:
    """Remove a document together with its .bac and stray .tmp files."""
    for candidate in (path, _with_suffix(path, BACKUP_SUFFIX), _with_suffix(path, TMP_SUFFIX)):
        with contextlib.suppress(FileNotFoundError):
            candidate.unlink()


class PersistenceHelper:
    """Save coordination for one persisted document.

    Owners pass a path supplier (the path may depend on mutable state such
    as the backup pair) and a serializer. Explicit saves wait for the save
    lock; auto-saves are skipped while another save is in flight.

    Example:
        helper = PersistenceHelper(lambda: path, obj.to_dict, name="Results")
        helper.start_auto_save()
        ...
        helper.save()
        helper.dispose()
    """

    def __init__(
        self,
        path_supplier: Callable[[], Path | None],
        serializer: Callable[[], Any],
        name: str = "document",
        make_backup: bool = True,
    ) -> None:
        self._path_supplier = path_supplier
        self._serializer = serializer
        self._name = name
        self._make_backup = make_backup
        self._lock = threading.Lock()
        self._scheduler: BackgroundScheduler | None = None
        self._auto_save_action: Callable[[], None] | None = None
        self._disposed = False

    @property
    def path(self) -> Path | None:
        return self._path_supplier()

    @property
    def is_auto_saving(self) -> bool:
        return self._scheduler is not None

    def save(self) -> None:
        """Write the document now.

        Raises:
            RuntimeError: If the helper has been disposed.
            PersistenceError: If writing fails.
        """
        if self._disposed:
            raise RuntimeError(f"{self._name} has been disposed")
        path = self._path_supplier()
        if path is None:
            logger.debug("%s has no location yet, not saving", self._name)
            return
        with self._lock:
            write_document(path, self._serializer(), self._make_backup)
        logger.debug("%s saved to %s", self._name, path)

    def try_save_unlocked(self, action: Callable[[], None]) -> bool:
        """Run a save action only if no other save is in flight.

        Returns:
            True if the action ran.
        """
        if not self._lock.acquire(blocking=False):
            logger.debug("%s save in progress, skipping auto-save", self._name)
            return False
        try:
            action()
        finally:
            self._lock.release()
        return True

    def delete(self) -> None:
        path = self._path_supplier()
        if path is None:
            return
        with self._lock:
            delete_document(path)

    def start_auto_save(
        self,
        interval: float = DEFAULT_AUTO_SAVE_INTERVAL,
        action: Callable[[], None] | None = None,
    ) -> None:
        """Start saving periodically in a background thread.

        Args:
            interval: Seconds between saves.
            action: Custom save routine (runs under the save lock). Defaults
                to a plain write of the serialized document.
        """
        if self._disposed:
            raise RuntimeError(f"{self._name} has been disposed")
        self.stop_auto_save()
        self._auto_save_action = action or self._write_current
        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(
            self._auto_save,
            trigger=IntervalTrigger(seconds=interval),
            id=f"autosave_{self._name}",
            name=f"Auto-save {self._name}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.debug("%s auto-save started (every %ss)", self._name, interval)

    def stop_auto_save(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=True)
            self._scheduler = None
            logger.debug("%s auto-save stopped", self._name)

    def dispose(self) -> None:
        self.stop_auto_save()
        self._disposed = True

    def _write_current(self) -> None:
        path = self._path_supplier()
        if path is not None:
            write_document(path, self._serializer(), self._make_backup)

    def _auto_save(self) -> None:
        action = self._auto_save_action
        if action is None:
            return
        try:
            self.try_save_unlocked(action)
        except Exception:
            logger.exception("Auto-save of %s failed", self._name)
