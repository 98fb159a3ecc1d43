"""Registry of running backups.

This module provides:
- BackupManager: admits at most one run per backup pair (in this process
  and across processes), tracks running controllers and cancels them
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

from backupagent.core.config import BackupSettings
from backupagent.core.paths import compute_pair_hash, get_data_dir, get_lock_path, qualify_directory_path
from backupagent.data.results import BackupResults
from backupagent.sync.controller import BackupController
from backupagent.sync.lock import PairLock

logger = logging.getLogger(__name__)

ALREADY_RUNNING_MESSAGE = "A backup of this directory pair is already running"


class BackupManager:
    """Coordinates backup runs.

    A second run for a pair that is already being backed up (by this
    manager or by another process) returns immediately with a successful,
    unfinished result carrying ALREADY_RUNNING_MESSAGE.

    Example:
        manager = BackupManager()
        results = manager.start_backup("~/Documents", "/mnt/backup/Documents")
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or get_data_dir()
        self._lock = threading.Lock()
        self._running: dict[str, BackupController] = {}

    @property
    def is_running(self) -> bool:
        with self._lock:
            return bool(self._running)

    def running_backups(self) -> list[BackupController]:
        with self._lock:
            return list(self._running.values())

    def get_running(
        self, origin_base_dir_path: str | os.PathLike[str], dest_base_dir_path: str | os.PathLike[str]
    ) -> BackupController | None:
        key = compute_pair_hash(
            qualify_directory_path(origin_base_dir_path), qualify_directory_path(dest_base_dir_path)
        )
        with self._lock:
            return self._running.get(key)

    def start_backup(
        self,
        origin_base_dir_path: str | os.PathLike[str],
        dest_base_dir_path: str | os.PathLike[str],
        password: str | None = None,
        settings: BackupSettings | None = None,
    ) -> BackupResults:
        """Build a controller for the pair and run it on the calling thread."""
        controller = BackupController(
            origin_base_dir_path,
            dest_base_dir_path,
            password=password,
            settings=settings,
            data_dir=self.data_dir,
        )
        return self.start(controller)

    def start(self, controller: BackupController) -> BackupResults:
        """Run a controller unless its pair is already being backed up.

        Raises:
            BackupCanceledError: If the run is cancelled.
        """
        key = controller.pair_hash
        pair_lock = PairLock(
            get_lock_path(self.data_dir, controller.origin_base_dir_path, controller.dest_base_dir_path)
        )
        with self._lock:
            if key in self._running or not pair_lock.acquire():
                controller.dispose()
                return self._already_running(controller)
            self._running[key] = controller

        try:
            return controller.start()
        finally:
            with self._lock:
                self._running.pop(key, None)
            pair_lock.release()
            controller.dispose()

    def cancel_all(self) -> None:
        """Request cancellation of every running backup."""
        for controller in self.running_backups():
            controller.cancel()

    @staticmethod
    def _already_running(controller: BackupController) -> BackupResults:
        logger.info(
            "Backup %s -> %s is already running",
            controller.origin_base_dir_path,
            controller.dest_base_dir_path,
        )
        return BackupResults(
            controller.origin_base_dir_path,
            controller.dest_base_dir_path,
            is_success=True,
            is_finished=False,
            message=ALREADY_RUNNING_MESSAGE,
        )
