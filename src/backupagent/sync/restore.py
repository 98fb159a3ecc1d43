"""Restore orchestration.

This module provides:
- RestoreController: the reverse of a backup. Either restores a full tree
  into an empty destination (decrypting or decompressing as configured),
  or re-applies times and attributes to an existing tree from the backed-up
  source or from the recorded database
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path

from backupagent.core.attributes import FileAttributes, get_attributes, get_size, get_times, set_attributes, set_times
from backupagent.core.config import BackupSettings, load_settings
from backupagent.core.crypto import CryptoCodec, CryptoError, compute_file_sha1, copy_with_compression
from backupagent.core.paths import get_data_dir, is_directory_empty, map_path, qualify_directory_path
from backupagent.core.types import (
    BackupCanceledError,
    ComparisonMethod,
    CompressionMode,
    PersistenceError,
    RunState,
    SymbolicLinkHandling,
)
from backupagent.data.database import (
    BackedUpDirectoryData,
    BackedUpFileData,
    BackupDatabase,
    get_database_path,
    load_database,
    read_database_file,
)
from backupagent.data.results import BackupResults
from backupagent.sync.cancellation import CancellationToken
from backupagent.sync.controller import MESSAGE_TIME_FORMAT
from backupagent.sync.enumerator import TreeEnumerator, reproduce_link

logger = logging.getLogger(__name__)

Metadata = tuple[datetime | None, datetime | None, FileAttributes | None]


class RestoreController:
    """Restores a backup destination (source) into a directory (dest).

    The settings and database used are those of the backup pair
    (origin=dest, destination=source), so a restore reads what the backup
    recorded. Database records are keyed by restore destination paths.

    Attributes:
        restore_attributes_from_database: Prefer recorded metadata over the
            metadata of the backed-up files.
        copy_only_attributes: Do not copy contents, only re-apply metadata
            to an existing destination tree.
        write_database: Record what is restored and save the database.
    """

    def __init__(
        self,
        source_base_dir_path: str | os.PathLike[str],
        dest_base_dir_path: str | os.PathLike[str],
        password: str | None = None,
        settings: BackupSettings | None = None,
        data_dir: Path | None = None,
        restore_attributes_from_database: bool = False,
        copy_only_attributes: bool = False,
        write_database: bool = False,
    ) -> None:
        self.source_base_dir_path = qualify_directory_path(source_base_dir_path)
        self.dest_base_dir_path = qualify_directory_path(dest_base_dir_path)
        self.data_dir = data_dir or get_data_dir()
        self.restore_attributes_from_database = restore_attributes_from_database
        self.copy_only_attributes = copy_only_attributes
        self.write_database = write_database

        self.settings = settings or load_settings(
            self.data_dir, self.dest_base_dir_path, self.source_base_dir_path
        )
        self.database: BackupDatabase | None = None
        self.codec: CryptoCodec | None = None
        # Not bound to a data directory: a restore never overwrites backup results
        self.results = BackupResults(self.source_base_dir_path, self.dest_base_dir_path)
        self.cancel_token = CancellationToken()
        self.state = RunState.INITIALIZING

        self._password = password or None
        self._started = False

    def start(self) -> BackupResults:
        """Run the restore to completion.

        Raises:
            BackupCanceledError: If the restore was cancelled.
            RuntimeError: If the controller was already started.
        """
        if self._started:
            raise RuntimeError("A restore controller can only be started once")
        self._started = True
        try:
            if not self._initialize():
                return self.results
            if not self.copy_only_attributes:
                self._restore_tree()
            elif self.restore_attributes_from_database:
                self._restore_attributes_from_database()
            else:
                self._restore_attributes_from_source()
            self._finish()
        except BackupCanceledError:
            self.state = RunState.CANCELED
            self.results.is_success = False
            self.results.is_finished = True
            logger.info("Restore %s -> %s canceled", self.source_base_dir_path, self.dest_base_dir_path)
            raise
        finally:
            self.dispose()
        return self.results

    def cancel(self) -> None:
        self.cancel_token.cancel()
        self.results.message = "Restore canceled"

    def dispose(self) -> None:
        if self.codec is not None:
            self.codec.close()
            self.codec = None
        self._password = None

    # Initialization

    def _initialize(self) -> bool:
        self.state = RunState.INITIALIZING
        self.results.message = "Initializing..."

        source_exists = os.path.isdir(self.source_base_dir_path)
        if not self.copy_only_attributes:
            if not source_exists:
                return self._abort(f"Source directory not found: {self.source_base_dir_path}")
            if not is_directory_empty(self.dest_base_dir_path):
                return self._abort(f"Destination directory is not empty: {self.dest_base_dir_path}")
        elif not self.restore_attributes_from_database and not source_exists:
            return self._abort(f"Source directory not found: {self.source_base_dir_path}")

        database_path = get_database_path(self.data_dir, self.dest_base_dir_path, self.source_base_dir_path)
        if self.write_database:
            self.database, error = load_database(
                self.dest_base_dir_path, self.source_base_dir_path, self.data_dir
            )
            if error:
                self.results.message = error
        elif self.restore_attributes_from_database:
            self.database = read_database_file(database_path, self.data_dir)

        if self.restore_attributes_from_database and self.database is None:
            if self.copy_only_attributes:
                return self._abort(f"No database recorded for {self.dest_base_dir_path}")
            logger.warning("No database recorded, restoring attributes from the backed-up files")

        if self._password is not None:
            self.codec = CryptoCodec(
                self._password,
                compression_level=self.settings.compression_level,
                compress_algorithm=self.settings.compress_algorithm,
            )
        logger.info("Starting restore %s -> %s", self.source_base_dir_path, self.dest_base_dir_path)
        return True

    def _abort(self, message: str) -> bool:
        logger.error(message)
        self.results.is_success = False
        self.results.message = message
        self.state = RunState.FINISHED
        self.results.is_finished = True
        return False

    @property
    def _follow_symlinks(self) -> bool:
        return self.settings.symbolic_link != SymbolicLinkHandling.DIRECT

    def _to_dest(self, source_path: str) -> str:
        return map_path(source_path, self.source_base_dir_path, self.dest_base_dir_path)

    def _to_source(self, dest_path: str) -> str:
        return map_path(dest_path, self.dest_base_dir_path, self.source_base_dir_path)

    def _is_direct_link(self, path: str) -> bool:
        return self.settings.symbolic_link == SymbolicLinkHandling.DIRECT and os.path.islink(
            os.path.normpath(path)
        )

    def _enumerator(self) -> TreeEnumerator:
        return TreeEnumerator(self.source_base_dir_path, None, self.settings.symbolic_link)

    # Full restore

    def _restore_tree(self) -> None:
        enumerator = self._enumerator()
        self.state = RunState.COPYING_STRUCTURE
        self.results.message = "Restoring directory structure..."
        for source_dir_path in enumerator.directories():
            self.cancel_token.raise_if_cancelled()
            self._restore_directory(source_dir_path)

        self.state = RunState.COPYING_FILES
        self.results.message = "Restoring files..."
        for source_file_path in enumerator.files():
            self.cancel_token.raise_if_cancelled()
            self._restore_file(source_file_path)

        # Writing files bumped the directories' write times
        for dest_dir_path in sorted(
            self.results.successful_directories, key=lambda p: p.count(os.sep), reverse=True
        ):
            if dest_dir_path == self.dest_base_dir_path or os.path.islink(os.path.normpath(dest_dir_path)):
                continue
            try:
                self._apply_directory_metadata(dest_dir_path)
            except OSError as e:
                logger.warning("Could not restore times of %s: %s", dest_dir_path, e)

    def _restore_directory(self, source_dir_path: str) -> None:
        dest_dir_path = self._to_dest(source_dir_path)
        is_base = source_dir_path == self.source_base_dir_path
        try:
            if not is_base and self._is_direct_link(source_dir_path):
                reproduce_link(source_dir_path, dest_dir_path)
            else:
                os.makedirs(dest_dir_path, exist_ok=True)
            if not is_base:
                self._apply_directory_metadata(dest_dir_path)
        except OSError as e:
            self._record_failure(dest_dir_path, is_dir=True, error=e)
            return
        self.results.successful_directories.add(dest_dir_path)

    def _restore_file(self, source_file_path: str) -> None:
        dest_file_path = self._to_dest(source_file_path)
        self.results.message = f"Restoring {dest_file_path}"
        try:
            os.makedirs(os.path.dirname(dest_file_path), exist_ok=True)
            if self._is_direct_link(source_file_path):
                reproduce_link(source_file_path, dest_file_path)
            elif self.codec is not None:
                self.codec.decrypt_file(source_file_path, dest_file_path)
            else:
                copy_with_compression(
                    source_file_path,
                    dest_file_path,
                    self.settings.compression_level,
                    CompressionMode.DECOMPRESS,
                    self.settings.compress_algorithm,
                )
            self._apply_file_metadata(dest_file_path)
        except (OSError, CryptoError) as e:
            self._record_failure(dest_file_path, is_dir=False, error=e)
            return
        self.results.successful_files.add(dest_file_path)
        logger.info("Restored %s", dest_file_path)

    # Attribute-only restores

    def _restore_attributes_from_source(self) -> None:
        enumerator = self._enumerator()
        self.state = RunState.COPYING_STRUCTURE
        self.results.message = "Restoring directory attributes..."
        for source_dir_path in enumerator.directories():
            self.cancel_token.raise_if_cancelled()
            if source_dir_path != self.source_base_dir_path:
                self._restore_attributes(self._to_dest(source_dir_path), is_dir=True)

        self.state = RunState.COPYING_FILES
        self.results.message = "Restoring file attributes..."
        for source_file_path in enumerator.files():
            self.cancel_token.raise_if_cancelled()
            self._restore_attributes(self._to_dest(source_file_path), is_dir=False)

    def _restore_attributes_from_database(self) -> None:
        if self.database is None:
            raise RuntimeError("No database loaded for restoring attributes")
        self.state = RunState.COPYING_STRUCTURE
        self.results.message = "Restoring directory attributes..."
        for dest_dir_path in list(self.database.directories):
            self.cancel_token.raise_if_cancelled()
            if dest_dir_path != self.dest_base_dir_path:
                self._restore_attributes(dest_dir_path, is_dir=True)

        self.state = RunState.COPYING_FILES
        self.results.message = "Restoring file attributes..."
        for dest_file_path in list(self.database.files):
            self.cancel_token.raise_if_cancelled()
            self._restore_attributes(dest_file_path, is_dir=False)

    def _restore_attributes(self, dest_path: str, is_dir: bool) -> None:
        try:
            if not os.path.lexists(os.path.normpath(dest_path)):
                raise FileNotFoundError(f"Destination entry not found: {dest_path}")
            if is_dir:
                self._apply_directory_metadata(dest_path)
            else:
                self._apply_file_metadata(dest_path)
        except OSError as e:
            self._record_failure(dest_path, is_dir=is_dir, error=e)
            return
        if is_dir:
            self.results.successful_directories.add(dest_path)
        else:
            self.results.successful_files.add(dest_path)

    # Metadata

    def _resolve_metadata(
        self, dest_path: str, recorded: BackedUpDirectoryData | BackedUpFileData | None
    ) -> Metadata:
        """Combine recorded metadata with the backed-up entry's metadata."""
        source_path = self._to_source(dest_path)
        follow = self._follow_symlinks
        creation_time = last_write_time = attributes = None
        if recorded is not None:
            creation_time = recorded.creation_time
            last_write_time = recorded.last_write_time
            attributes = recorded.file_attributes
        if (creation_time is None or last_write_time is None or attributes is None) and os.path.lexists(
            os.path.normpath(source_path)
        ):
            times = get_times(source_path, follow)
            creation_time = creation_time or times.creation_time
            last_write_time = last_write_time or times.last_write_time
            if attributes is None:
                attributes = get_attributes(source_path, follow)
        return creation_time, last_write_time, attributes

    def _apply_metadata(self, dest_path: str, metadata: Metadata) -> None:
        creation_time, last_write_time, attributes = metadata
        follow = self._follow_symlinks
        set_times(dest_path, creation_time, last_write_time, follow)
        if attributes is not None:
            set_attributes(dest_path, attributes, follow)

    def _apply_directory_metadata(self, dest_dir_path: str) -> None:
        recorded = None
        if self.restore_attributes_from_database and self.database is not None:
            recorded = self.database.directories.get(dest_dir_path)
        metadata = self._resolve_metadata(dest_dir_path, recorded)
        self._apply_metadata(dest_dir_path, metadata)
        if self.write_database and self.database is not None:
            self.database.directories[dest_dir_path] = BackedUpDirectoryData(*metadata)

    def _apply_file_metadata(self, dest_file_path: str) -> None:
        recorded = None
        if self.restore_attributes_from_database and self.database is not None:
            recorded = self.database.files.get(dest_file_path)
        metadata = self._resolve_metadata(dest_file_path, recorded)
        self._apply_metadata(dest_file_path, metadata)
        if self.write_database and self.database is not None:
            creation_time, last_write_time, attributes = metadata
            method = self.settings.comparison_method
            self.database.files[dest_file_path] = BackedUpFileData(
                creation_time=creation_time,
                last_write_time=last_write_time,
                origin_size=get_size(dest_file_path, self._follow_symlinks),
                file_attributes=attributes,
                sha1=compute_file_sha1(dest_file_path)
                if method & ComparisonMethod.FILE_CONTENTS_SHA1
                else None,
            )

    # Completion

    def _record_failure(self, dest_path: str, is_dir: bool, error: Exception) -> None:
        kind = "directory" if is_dir else "file"
        logger.error("Failed to restore %s %s: %s", kind, dest_path, error)
        if is_dir:
            self.results.failed_directories.add(dest_path)
        else:
            self.results.failed_files.add(dest_path)
        self.results.message = f"Failed to restore {dest_path}: {error}"

    def _finish(self) -> None:
        self.state = RunState.FINISHED
        self.results.is_success = not self.results.has_failures
        if self.write_database and self.database is not None:
            try:
                self.database.save()
            except PersistenceError as e:
                logger.exception("Could not save database")
                self.results.is_success = False
                self.results.message = str(e)
            finally:
                self.database.dispose()

        now = datetime.now().strftime(MESSAGE_TIME_FORMAT)
        if self.results.is_success:
            self.results.message = f"Restore completed: {now}"
        else:
            self.results.message = f"{self.results.message}\nRestore failed: {now}"
        logger.info("Restore %s -> %s finished: %s", self.source_base_dir_path, self.dest_base_dir_path, self.results.summary())
        self.results.is_finished = True
