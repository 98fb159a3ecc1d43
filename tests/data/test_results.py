"""Tests for run results and their listeners."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import MagicMock

from backupagent.data.results import BackupResults, get_results_path, load_results

ORIGIN = os.sep + os.path.join("o", "")
DEST = os.sep + os.path.join("d", "")


class TestListeners:
    """Tests for message and finished listeners."""

    def test_message_listener_receives_updates(self) -> None:
        results = BackupResults(ORIGIN, DEST)
        listener = MagicMock()
        results.add_message_listener(listener)

        results.message = "Copying files..."

        listener.assert_called_once_with(results, "Copying files...")

    def test_removed_listener_not_called(self) -> None:
        results = BackupResults(ORIGIN, DEST)
        listener = MagicMock()
        results.add_message_listener(listener)
        results.remove_message_listener(listener)

        results.message = "x"

        listener.assert_not_called()

    def test_finished_fires_once(self) -> None:
        results = BackupResults(ORIGIN, DEST)
        listener = MagicMock()
        results.add_finished_listener(listener)

        results.is_finished = True
        results.is_finished = True

        listener.assert_called_once_with(results)

    def test_failing_listener_does_not_break_run(self) -> None:
        results = BackupResults(ORIGIN, DEST)
        results.add_message_listener(MagicMock(side_effect=RuntimeError("boom")))
        after = MagicMock()
        results.add_message_listener(after)

        results.message = "still going"

        assert results.message == "still going"
        after.assert_called_once()


class TestResultSets:
    """Tests for the per-run path sets."""

    def test_reset_controls_optional_sets(self) -> None:
        results = BackupResults(ORIGIN, DEST)
        results.successful_files.add(ORIGIN + "a")

        results.reset(track_unchanged=False, track_deleted=True)

        assert results.successful_files == set()
        assert results.unchanged_files is None
        assert results.deleted_files == set()
        assert results.deleted_directories == set()

    def test_summary(self) -> None:
        results = BackupResults(ORIGIN, DEST)
        results.reset(track_unchanged=True, track_deleted=True)
        results.successful_files.update({"a", "b"})
        results.unchanged_files.add("c")
        results.failed_directories.add("d/")
        results.deleted_files.add("e")

        assert results.summary() == "2 copied, 1 unchanged, 1 failed, 1 deleted"
        assert results.has_failures


class TestPersistence:
    """Tests for the results document."""

    def test_save_and_load(self, tmp_path: Path) -> None:
        results = BackupResults(ORIGIN, DEST, tmp_path, is_success=True, message="done")
        results.successful_files.add(ORIGIN + "a.txt")
        results.is_finished = True
        results.save()

        assert get_results_path(tmp_path, ORIGIN, DEST).exists()
        loaded = load_results(tmp_path, ORIGIN, DEST)
        assert loaded is not None
        assert loaded.is_success
        assert loaded.is_finished
        assert loaded.message == "done"
        assert loaded.successful_files == {ORIGIN + "a.txt"}
        assert loaded.deleted_files is None

    def test_save_without_data_dir_is_noop(self, tmp_path: Path) -> None:
        BackupResults(ORIGIN, DEST).save()
        assert load_results(tmp_path, ORIGIN, DEST) is None
