"""Cooperative cancellation of backup and restore runs."""

from __future__ import annotations

import threading

from backupagent.core.types import BackupCanceledError


class CancellationToken:
    """Thread-safe cancellation flag shared between a run and its canceller.

    Runs poll raise_if_cancelled() between units of work; an in-flight file
    copy always completes.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BackupCanceledError("Operation was cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds. Returns True if cancelled meanwhile."""
        return self._event.wait(seconds)
