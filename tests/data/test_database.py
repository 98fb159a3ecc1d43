"""Tests for the backup metadata database."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path

from backupagent.core.attributes import FileAttributes
from backupagent.data.database import (
    NOT_RECORDED_SIZE,
    BackedUpDirectoryData,
    BackedUpFileData,
    BackupDatabase,
    get_database_path,
    load_database,
    read_database_file,
)
from backupagent.data.writer import write_document

ORIGIN = os.sep + os.path.join("o", "")
DEST = os.sep + os.path.join("d", "")
WHEN = datetime(2024, 2, 29, 23, 59, 58, 123456, tzinfo=UTC)


class TestRecords:
    """Tests for the compact record encoding."""

    def test_file_record_keys(self) -> None:
        record = BackedUpFileData(
            creation_time=WHEN,
            last_write_time=WHEN,
            origin_size=42,
            file_attributes=FileAttributes.READONLY,
            sha1="ab" * 20,
        )
        data = record.to_dict()
        assert set(data) == {"c", "w", "o", "a", "s"}
        assert data["o"] == 42
        assert data["a"] == 1
        assert BackedUpFileData.from_dict(data) == record

    def test_unset_fields_omitted(self) -> None:
        """Only populated fields are written."""
        assert BackedUpFileData(last_write_time=WHEN).to_dict() == {"w": WHEN.isoformat()}
        assert BackedUpFileData().to_dict() == {}

    def test_missing_size_reads_as_not_recorded(self) -> None:
        assert BackedUpFileData.from_dict({}).origin_size == NOT_RECORDED_SIZE

    def test_directory_record_round_trip(self) -> None:
        record = BackedUpDirectoryData(WHEN, WHEN, FileAttributes.DIRECTORY | FileAttributes.HIDDEN)
        assert BackedUpDirectoryData.from_dict(record.to_dict()) == record

    def test_times_keep_microseconds(self) -> None:
        record = BackedUpFileData.from_dict(BackedUpFileData(last_write_time=WHEN).to_dict())
        assert record.last_write_time == WHEN


class TestBackupDatabase:
    """Tests for BackupDatabase persistence."""

    def _database(self, data_dir: Path) -> BackupDatabase:
        database = BackupDatabase(ORIGIN, DEST, data_dir)
        database.directories[ORIGIN] = BackedUpDirectoryData(last_write_time=WHEN)
        database.files[ORIGIN + "a.txt"] = BackedUpFileData(last_write_time=WHEN, origin_size=3)
        return database

    def test_document_layout(self, tmp_path: Path) -> None:
        database = self._database(tmp_path)
        database.save()

        data = json.loads(get_database_path(tmp_path, ORIGIN, DEST).read_text())
        assert data["ob"] == ORIGIN
        assert data["db"] == DEST
        assert set(data["dd"]) == {ORIGIN}
        assert data["fd"][ORIGIN + "a.txt"] == {"w": WHEN.isoformat(), "o": 3}

    def test_save_and_load(self, tmp_path: Path) -> None:
        self._database(tmp_path).save()

        loaded, error = load_database(ORIGIN, DEST, tmp_path)

        assert error is None
        assert loaded.files[ORIGIN + "a.txt"].origin_size == 3
        assert loaded.directories[ORIGIN].last_write_time == WHEN

    def test_missing_document_gives_empty_database(self, tmp_path: Path) -> None:
        database, error = load_database(ORIGIN, DEST, tmp_path)
        assert error is None
        assert database.files == {}
        assert database.directories == {}

    def test_identity_mismatch_starts_fresh(self, tmp_path: Path) -> None:
        """A document belonging to another pair is never used."""
        foreign = {"ob": "/other/", "db": DEST, "dd": {}, "fd": {"/other/x": {"o": 1}}}
        write_document(get_database_path(tmp_path, ORIGIN, DEST), foreign)

        database, error = load_database(ORIGIN, DEST, tmp_path)

        assert error is not None
        assert database.files == {}
        assert database.origin_base_dir_path == ORIGIN

    def test_corrupt_document_starts_fresh(self, tmp_path: Path) -> None:
        path = get_database_path(tmp_path, ORIGIN, DEST)
        path.parent.mkdir(parents=True)
        path.write_text("{broken")

        database, error = load_database(ORIGIN, DEST, tmp_path)

        assert error is not None
        assert database.files == {}

    def test_checkpoint_replaces_document(self, tmp_path: Path) -> None:
        database = self._database(tmp_path)
        database.save()
        database.files[ORIGIN + "b.txt"] = BackedUpFileData(origin_size=5)

        database.checkpoint()

        assert not database.checkpoint_path.exists()
        loaded = read_database_file(database.path, tmp_path)
        assert loaded is not None
        assert set(loaded.files) == {ORIGIN + "a.txt", ORIGIN + "b.txt"}
        assert Path(str(database.path) + ".bac").exists()

    def test_delete(self, tmp_path: Path) -> None:
        database = self._database(tmp_path)
        database.save()
        database.delete()
        assert read_database_file(database.path, tmp_path) is None

    def test_auto_save_stops_on_dispose(self, tmp_path: Path) -> None:
        database = self._database(tmp_path)
        database.start_auto_save(interval=60)
        database.dispose()
        assert not database._persistence.is_auto_saving
