"""Tests for change detection."""

from __future__ import annotations

import hashlib
import shutil
from collections.abc import Callable
from pathlib import Path

import pytest

from backupagent.core.attributes import get_last_write_time, get_size
from backupagent.core.config import BackupSettings
from backupagent.core.types import ComparisonMethod
from backupagent.data.database import BackedUpFileData, BackupDatabase
from backupagent.sync.change_detector import DatabaseChangeDetector, FilesystemChangeDetector


@pytest.fixture
def pair(tmp_path: Path) -> tuple[str, str]:
    """An origin file and an identical destination copy with the same write time."""
    origin = tmp_path / "origin.txt"
    origin.write_bytes(b"content")
    dest = tmp_path / "dest.txt"
    shutil.copy2(origin, dest)
    return str(origin), str(dest)


def record_for(path: str, **overrides: object) -> BackedUpFileData:
    values: dict[str, object] = {
        "last_write_time": get_last_write_time(path),
        "origin_size": get_size(path),
        "sha1": hashlib.sha1(Path(path).read_bytes()).hexdigest(),
    }
    values.update(overrides)
    return BackedUpFileData(**values)


class TestDatabaseChangeDetector:
    """Tests for decisions made from recorded metadata."""

    def _detector(
        self,
        tmp_path: Path,
        method: ComparisonMethod,
        records: dict[str, BackedUpFileData],
        is_transformed: bool = False,
    ) -> DatabaseChangeDetector:
        database = BackupDatabase("/o/", "/d/", tmp_path, files=records)
        return DatabaseChangeDetector(BackupSettings(comparison_method=method), database, is_transformed)

    def test_unrecorded_file_is_changed(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        detector = self._detector(tmp_path, ComparisonMethod.WRITE_TIME, {})
        assert not detector.is_unchanged(*pair)

    def test_no_comparison_always_copies(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        origin, _ = pair
        detector = self._detector(tmp_path, ComparisonMethod.NO_COMPARISON, {origin: record_for(origin)})
        assert not detector.is_unchanged(*pair)

    def test_matching_record_is_unchanged(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        origin, _ = pair
        method = ComparisonMethod.WRITE_TIME | ComparisonMethod.SIZE | ComparisonMethod.FILE_CONTENTS_SHA1
        detector = self._detector(tmp_path, method, {origin: record_for(origin)})
        assert detector.is_unchanged(*pair)

    def test_write_time_difference(
        self, tmp_path: Path, pair: tuple[str, str], bump: Callable[[Path, int], None]
    ) -> None:
        origin, _ = pair
        detector = self._detector(tmp_path, ComparisonMethod.WRITE_TIME, {origin: record_for(origin)})
        bump(Path(origin), 5)
        assert not detector.is_unchanged(*pair)

    def test_size_difference(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        origin, _ = pair
        detector = self._detector(tmp_path, ComparisonMethod.SIZE, {origin: record_for(origin, origin_size=1)})
        assert not detector.is_unchanged(*pair)

    def test_unrecorded_size_is_changed(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        origin, _ = pair
        detector = self._detector(tmp_path, ComparisonMethod.SIZE, {origin: record_for(origin, origin_size=-1)})
        assert not detector.is_unchanged(*pair)

    def test_sha1_difference(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        origin, _ = pair
        detector = self._detector(
            tmp_path, ComparisonMethod.FILE_CONTENTS_SHA1, {origin: record_for(origin, sha1="0" * 40)}
        )
        assert not detector.is_unchanged(*pair)

    def test_missing_write_time_falls_back_to_destination(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        """The destination's write time fills in and is recorded for next time."""
        origin, dest = pair
        record = record_for(origin, last_write_time=None)
        detector = self._detector(tmp_path, ComparisonMethod.WRITE_TIME, {origin: record})

        assert detector.is_unchanged(origin, dest)
        assert record.last_write_time == get_last_write_time(dest)

    def test_binary_comparison(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        origin, dest = pair
        detector = self._detector(tmp_path, ComparisonMethod.FILE_CONTENTS_BINARY, {origin: record_for(origin)})
        assert detector.is_unchanged(origin, dest)

        Path(dest).write_bytes(b"content, edited")
        assert not detector.is_unchanged(origin, dest)

    def test_binary_comparison_impossible_when_encrypted(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        origin, _ = pair
        detector = self._detector(
            tmp_path, ComparisonMethod.FILE_CONTENTS_BINARY, {origin: record_for(origin)}, is_transformed=True
        )
        assert not detector.is_unchanged(*pair)

    def test_destination_not_read_for_metadata_checks(self, tmp_path: Path, pair: tuple[str, str]) -> None:
        """With a database, write time and size never consult the destination."""
        origin, dest = pair
        Path(dest).unlink()
        method = ComparisonMethod.WRITE_TIME | ComparisonMethod.SIZE
        detector = self._detector(tmp_path, method, {origin: record_for(origin)})
        assert detector.is_unchanged(origin, dest)


class TestFilesystemChangeDetector:
    """Tests for decisions made from the destination file."""

    def _detector(self, method: ComparisonMethod, is_transformed: bool = False) -> FilesystemChangeDetector:
        return FilesystemChangeDetector(BackupSettings(comparison_method=method), is_transformed)

    def test_identical_copy_is_unchanged(self, pair: tuple[str, str]) -> None:
        assert self._detector(ComparisonMethod.WRITE_TIME | ComparisonMethod.SIZE).is_unchanged(*pair)

    def test_missing_destination_is_changed(self, pair: tuple[str, str]) -> None:
        origin, dest = pair
        Path(dest).unlink()
        assert not self._detector(ComparisonMethod.WRITE_TIME).is_unchanged(origin, dest)

    def test_write_time_difference(self, pair: tuple[str, str], bump: Callable[[Path, int], None]) -> None:
        origin, dest = pair
        bump(Path(origin), 5)
        assert not self._detector(ComparisonMethod.WRITE_TIME).is_unchanged(origin, dest)

    def test_size_difference(self, pair: tuple[str, str]) -> None:
        origin, dest = pair
        Path(dest).write_bytes(b"longer content")
        assert not self._detector(ComparisonMethod.SIZE).is_unchanged(origin, dest)

    def test_sha1_compares_destination_contents(self, pair: tuple[str, str]) -> None:
        origin, dest = pair
        detector = self._detector(ComparisonMethod.FILE_CONTENTS_SHA1)
        assert detector.is_unchanged(origin, dest)

        Path(dest).write_bytes(b"CONTENT")
        assert not detector.is_unchanged(origin, dest)
