"""Backup run orchestration.

This module provides:
- BackupController: one differential backup of an origin directory into a
  destination directory, driven through the RunState lifecycle
  (structure pass, file pass, deletion pass, bounded retries)
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path

from backupagent.core.attributes import (
    SETTABLE_ATTRIBUTES,
    FileAttributes,
    clear_attributes,
    get_attributes,
    get_size,
    get_times,
    set_attributes,
    set_times,
)
from backupagent.core.config import BackupSettings, load_settings
from backupagent.core.crypto import CryptoCodec, CryptoError, compute_file_sha1, copy_with_compression
from backupagent.core.paths import compute_pair_hash, get_data_dir, map_path, qualify_directory_path
from backupagent.core.types import (
    BackupCanceledError,
    ComparisonMethod,
    CompressionLevel,
    CompressionMode,
    ConfigurationError,
    PersistenceError,
    RunState,
    SymbolicLinkHandling,
    VersioningMethod,
)
from backupagent.data.database import BackedUpDirectoryData, BackedUpFileData, BackupDatabase, load_database
from backupagent.data.results import BackupResults
from backupagent.data.writer import DEFAULT_AUTO_SAVE_INTERVAL
from backupagent.sync.cancellation import CancellationToken
from backupagent.sync.change_detector import ChangeDetector, DatabaseChangeDetector, FilesystemChangeDetector
from backupagent.sync.enumerator import TreeEnumerator, reproduce_link
from backupagent.sync.versioning import VersioningPolicy

logger = logging.getLogger(__name__)

MESSAGE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

PROTECTION_ATTRIBUTES = FileAttributes.READONLY | FileAttributes.HIDDEN


def _depth(path: str) -> int:
    return path.rstrip(os.sep).count(os.sep)


class BackupController:
    """Runs one backup of an origin directory into a destination directory.

    A controller is single-use: build it, call start(), read the results.
    cancel() may be called from another thread while start() runs.

    Example:
        controller = BackupController("~/Documents", "/mnt/backup/Documents")
        results = controller.start()
        print(results.message)
    """

    def __init__(
        self,
        origin_base_dir_path: str | os.PathLike[str],
        dest_base_dir_path: str | os.PathLike[str],
        password: str | None = None,
        settings: BackupSettings | None = None,
        data_dir: Path | None = None,
        auto_save_interval: float = DEFAULT_AUTO_SAVE_INTERVAL,
    ) -> None:
        self.origin_base_dir_path = qualify_directory_path(origin_base_dir_path)
        self.dest_base_dir_path = qualify_directory_path(dest_base_dir_path)
        self.data_dir = data_dir or get_data_dir()
        self.auto_save_interval = auto_save_interval
        self.start_time = datetime.now()

        if settings is None:
            settings = load_settings(self.data_dir, self.origin_base_dir_path, self.dest_base_dir_path)
        if (
            settings.origin_base_dir_path != self.origin_base_dir_path
            or settings.dest_base_dir_path != self.dest_base_dir_path
        ):
            settings = settings.to_local(self.origin_base_dir_path, self.dest_base_dir_path)
        self.settings = settings
        self.database: BackupDatabase | None = None
        self.codec: CryptoCodec | None = None
        self.results = BackupResults(self.origin_base_dir_path, self.dest_base_dir_path, self.data_dir)
        self.cancel_token = CancellationToken()
        self.state = RunState.INITIALIZING

        self._password = password or None
        self._versioning = VersioningPolicy(
            settings.versioning,
            self.dest_base_dir_path,
            settings.revisions_dir_path,
            self.start_time,
            settings.overwrite_readonly,
        )
        self._detector: ChangeDetector | None = None
        self._enumerator: TreeEnumerator | None = None
        self._started = False
        self._closed = False

    @property
    def pair_hash(self) -> str:
        return compute_pair_hash(self.origin_base_dir_path, self.dest_base_dir_path)

    @property
    def is_encrypted(self) -> bool:
        return self._password is not None

    # Lifecycle

    def start(self) -> BackupResults:
        """Run the backup to completion.

        Returns:
            The results of the run.

        Raises:
            BackupCanceledError: If the run was cancelled.
            RuntimeError: If the controller was already started.
        """
        if self._started:
            raise RuntimeError("A backup controller can only be started once")
        self._started = True
        try:
            if not self._initialize():
                return self.results
            self._run_passes()
            self._retry_failures()
            self._finish()
        except BackupCanceledError:
            self._on_canceled()
            raise
        finally:
            self.dispose()
        return self.results

    def cancel(self) -> bool:
        """Request cancellation of a running backup.

        The database is saved immediately; the run stops at the next unit
        of work and raises BackupCanceledError from start().

        Returns:
            False if the settings do not allow cancellation.
        """
        if not self.settings.cancelable:
            logger.warning("Backup %s -> %s is not cancelable", self.origin_base_dir_path, self.dest_base_dir_path)
            return False
        logger.info("Cancelling backup %s -> %s", self.origin_base_dir_path, self.dest_base_dir_path)
        if self.database is not None:
            try:
                self.database.save()
            except (PersistenceError, RuntimeError):
                logger.exception("Could not save database on cancel")
        self.cancel_token.cancel()
        self.results.is_success = False
        self.results.message = "Backup canceled"
        self.results.is_finished = True
        return True

    def dispose(self) -> None:
        """Release the database auto-save, the codec and the password."""
        if self._closed:
            return
        self._closed = True
        if self.database is not None:
            self.database.dispose()
        if self.codec is not None:
            self.codec.close()
        self._password = None

    def _set_state(self, state: RunState) -> None:
        logger.debug("Backup state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _check_cancelled(self) -> None:
        self.cancel_token.raise_if_cancelled()

    # Initialization

    def _initialize(self) -> bool:
        self._set_state(RunState.INITIALIZING)
        self.results.message = "Initializing..."

        settings = self.settings
        try:
            settings.validate()
            self._versioning.validate()
        except ConfigurationError as e:
            self._abort(f"Invalid settings: {e}")
            return False

        try:
            settings.save(self.data_dir)
        except PersistenceError:
            logger.exception("Could not save settings")

        logger.info(
            "Starting backup %s -> %s\n%s",
            self.origin_base_dir_path,
            self.dest_base_dir_path,
            settings.describe(),
        )

        if not os.path.isdir(self.origin_base_dir_path):
            self._abort(f"Origin directory not found: {self.origin_base_dir_path}")
            return False

        if settings.use_database:
            self.database, error = load_database(
                self.origin_base_dir_path, self.dest_base_dir_path, self.data_dir
            )
            if error:
                self.results.message = error
            self.database.start_auto_save(self.auto_save_interval)

        self.results.reset(
            track_unchanged=settings.comparison_method != ComparisonMethod.NO_COMPARISON,
            track_deleted=settings.enable_deletion,
        )

        if self._password is not None:
            self.codec = CryptoCodec(
                self._password,
                compression_level=settings.compression_level,
                compress_algorithm=settings.compress_algorithm,
            )
        is_transformed = (
            self.codec is not None or settings.compression_level != CompressionLevel.NO_COMPRESSION
        )
        if self.database is not None:
            self._detector = DatabaseChangeDetector(
                settings, self.database, is_transformed, self._follow_symlinks
            )
        else:
            self._detector = FilesystemChangeDetector(settings, is_transformed, self._follow_symlinks)
        self._enumerator = TreeEnumerator(
            self.origin_base_dir_path, settings.regexes, settings.symbolic_link
        )
        return True

    def _abort(self, message: str) -> None:
        logger.error(message)
        self.results.is_success = False
        self.results.message = message
        self._set_state(RunState.FINISHED)
        self.results.is_finished = True
        self._save_results()

    @property
    def _follow_symlinks(self) -> bool:
        return self.settings.symbolic_link != SymbolicLinkHandling.DIRECT

    def _to_dest(self, origin_path: str) -> str:
        return map_path(origin_path, self.origin_base_dir_path, self.dest_base_dir_path)

    def _to_origin(self, dest_path: str) -> str:
        return map_path(dest_path, self.dest_base_dir_path, self.origin_base_dir_path)

    def _is_direct_link(self, path: str) -> bool:
        return self.settings.symbolic_link == SymbolicLinkHandling.DIRECT and os.path.islink(
            os.path.normpath(path)
        )

    # Passes

    def _run_passes(self) -> None:
        if self._enumerator is None:
            raise RuntimeError("Backup controller is not initialized")

        self._set_state(RunState.COPYING_STRUCTURE)
        self.results.message = "Copying directory structure..."
        for origin_dir_path in self._enumerator.directories():
            self._check_cancelled()
            self._copy_directory(origin_dir_path)

        self._set_state(RunState.COPYING_FILES)
        self.results.message = "Copying files..."
        for origin_file_path in self._enumerator.files():
            self._check_cancelled()
            self._process_file(origin_file_path)

        if self.settings.enable_deletion:
            self._delete_pass()

        self.results.is_success = not self.results.has_failures

    def _retry_failures(self) -> None:
        retry_count = self.settings.retry_count
        attempt = 0
        while not self.results.is_success and attempt < retry_count:
            attempt += 1
            self._set_state(RunState.RETRYING)
            self.results.message = f"Retrying failed items ({attempt}/{retry_count})..."
            logger.info(
                "Retry %d/%d: %d directories, %d files",
                attempt,
                retry_count,
                len(self.results.failed_directories),
                len(self.results.failed_files),
            )
            if self.cancel_token.wait(self.settings.retry_wait_ms / 1000):
                raise BackupCanceledError("Operation was cancelled")

            for origin_dir_path in sorted(self.results.failed_directories, key=_depth):
                self._check_cancelled()
                self._copy_directory(origin_dir_path)
            for origin_file_path in sorted(self.results.failed_files):
                self._check_cancelled()
                self._backup_file(origin_file_path)

            if self.settings.enable_deletion:
                self._delete_pass()

            self.results.is_success = not self.results.has_failures

    def _finish(self) -> None:
        self._set_state(RunState.FINISHED)
        if self.database is not None:
            self.database.stop_auto_save()
            try:
                self.database.save()
            except PersistenceError as e:
                logger.exception("Could not save database")
                self.results.is_success = False
                self.results.message = str(e)

        now = datetime.now().strftime(MESSAGE_TIME_FORMAT)
        if self.results.is_success:
            self.results.message = f"Backup completed: {now}"
        else:
            self.results.message = f"{self.results.message}\nBackup failed: {now}"
        logger.info("Backup %s -> %s finished: %s", self.origin_base_dir_path, self.dest_base_dir_path, self.results.summary())
        self.results.is_finished = True
        self._save_results()

    def _on_canceled(self) -> None:
        self._set_state(RunState.CANCELED)
        logger.info("Backup %s -> %s canceled", self.origin_base_dir_path, self.dest_base_dir_path)
        self.results.is_success = False
        self.results.is_finished = True
        self._save_results()

    def _save_results(self) -> None:
        try:
            self.results.save()
        except PersistenceError:
            logger.exception("Could not save results")

    # Directories

    def _copy_directory(self, origin_dir_path: str) -> bool:
        dest_dir_path = self._to_dest(origin_dir_path)
        is_base = origin_dir_path == self.origin_base_dir_path
        try:
            if not is_base and self._is_direct_link(origin_dir_path):
                reproduce_link(origin_dir_path, dest_dir_path)
            elif not os.path.isdir(dest_dir_path):
                os.makedirs(dest_dir_path, exist_ok=True)
                logger.debug("Created directory %s", dest_dir_path)
            if not is_base:
                self._copy_directory_attributes(origin_dir_path, dest_dir_path)
        except OSError as e:
            logger.error("Failed to copy directory %s: %s", origin_dir_path, e)
            self.results.failed_directories.add(origin_dir_path)
            self.results.message = f"Failed to copy directory {origin_dir_path}: {e}"
            return False

        self.results.failed_directories.discard(origin_dir_path)
        self.results.successful_directories.add(origin_dir_path)
        return True

    def _copy_directory_attributes(self, origin_dir_path: str, dest_dir_path: str) -> None:
        follow = self._follow_symlinks
        times = get_times(origin_dir_path, follow)
        attributes = get_attributes(origin_dir_path, follow)

        if self.settings.copy_attributes:
            dest_times = get_times(dest_dir_path, follow)
            if dest_times.last_write_time != times.last_write_time or (
                times.creation_time is not None and dest_times.creation_time != times.creation_time
            ):
                set_times(dest_dir_path, times.creation_time, times.last_write_time, follow)
            dest_attributes = get_attributes(dest_dir_path, follow)
            if dest_attributes & SETTABLE_ATTRIBUTES != attributes & SETTABLE_ATTRIBUTES:
                set_attributes(dest_dir_path, attributes, follow)
            logger.debug("Copied attributes of %s", origin_dir_path)

        if self.database is not None:
            self.database.directories[origin_dir_path] = BackedUpDirectoryData(
                creation_time=times.creation_time if self.settings.copy_attributes else None,
                last_write_time=times.last_write_time if self.settings.copy_attributes else None,
                file_attributes=attributes,
            )

    # Files

    def _is_ignored_file(self, origin_file_path: str) -> bool:
        if self.settings.symbolic_link == SymbolicLinkHandling.IGNORE_ALL and os.path.islink(origin_file_path):
            return True
        return self.settings.regexes.is_excluded_file(origin_file_path, self.origin_base_dir_path)

    def _process_file(self, origin_file_path: str) -> None:
        if self._is_ignored_file(origin_file_path):
            logger.debug("Ignored %s", origin_file_path)
            return

        if self._detector is None:
            raise RuntimeError("Backup controller is not initialized")
        dest_file_path = self._to_dest(origin_file_path)
        try:
            unchanged = self._detector.is_unchanged(origin_file_path, dest_file_path)
        except OSError as e:
            logger.warning("Could not compare %s: %s", origin_file_path, e)
            unchanged = False

        if unchanged:
            if self.results.unchanged_files is not None:
                self.results.unchanged_files.add(origin_file_path)
            logger.debug("Unchanged %s", origin_file_path)
            return

        self._backup_file(origin_file_path)

    def _backup_file(self, origin_file_path: str) -> bool:
        dest_file_path = self._to_dest(origin_file_path)
        previous = self.database.files.get(origin_file_path) if self.database is not None else None
        self.results.message = f"Backing up {origin_file_path}"
        try:
            os.makedirs(os.path.dirname(dest_file_path), exist_ok=True)
            if os.path.lexists(dest_file_path):
                if self.settings.overwrite_readonly:
                    self._unprotect(dest_file_path, previous)
                if self.settings.versioning != VersioningMethod.PERMANENT_DELETION:
                    self._versioning.discard_file(dest_file_path)
                elif os.path.islink(dest_file_path):
                    os.unlink(dest_file_path)
            self._write_file(origin_file_path, dest_file_path)
            self._copy_file_attributes(origin_file_path, dest_file_path)
        except (OSError, CryptoError) as e:
            logger.error("Failed to back up %s: %s", origin_file_path, e)
            self.results.failed_files.add(origin_file_path)
            self.results.message = f"Failed to back up {origin_file_path}: {e}"
            return False

        self.results.failed_files.discard(origin_file_path)
        self.results.successful_files.add(origin_file_path)
        logger.info("Backed up %s", origin_file_path)
        return True

    def _unprotect(self, dest_file_path: str, previous: BackedUpFileData | None) -> None:
        """Clear read-only and hidden bits that would block an overwrite."""
        if (
            previous is not None
            and previous.file_attributes is not None
            and not previous.file_attributes & PROTECTION_ATTRIBUTES
        ):
            return
        if os.path.islink(dest_file_path):
            return
        clear_attributes(dest_file_path, PROTECTION_ATTRIBUTES)

    def _write_file(self, origin_file_path: str, dest_file_path: str) -> None:
        if self._is_direct_link(origin_file_path):
            reproduce_link(origin_file_path, dest_file_path)
        elif self.codec is not None:
            self.codec.encrypt_file(origin_file_path, dest_file_path)
        else:
            copy_with_compression(
                origin_file_path,
                dest_file_path,
                self.settings.compression_level,
                CompressionMode.COMPRESS,
                self.settings.compress_algorithm,
            )

    def _copy_file_attributes(self, origin_file_path: str, dest_file_path: str) -> None:
        """Copy metadata to the fresh destination and record the file."""
        settings = self.settings
        method = settings.comparison_method
        follow = self._follow_symlinks
        needs_times = settings.copy_attributes or bool(method & ComparisonMethod.WRITE_TIME)
        needs_attributes = settings.copy_attributes or method != ComparisonMethod.NO_COMPARISON

        times = get_times(origin_file_path, follow) if needs_times else None
        attributes = get_attributes(origin_file_path, follow) if needs_attributes else None

        if settings.copy_attributes and times is not None and attributes is not None:
            set_times(dest_file_path, times.creation_time, times.last_write_time, follow)
            dest_attributes = get_attributes(dest_file_path, follow)
            if dest_attributes & SETTABLE_ATTRIBUTES != attributes & SETTABLE_ATTRIBUTES:
                set_attributes(dest_file_path, attributes, follow)

        if method & ComparisonMethod.ARCHIVE_ATTRIBUTE and not os.path.islink(origin_file_path):
            before = clear_attributes(origin_file_path, FileAttributes.ARCHIVE)
            attributes = before & ~FileAttributes.ARCHIVE

        if self.database is None:
            return
        record = BackedUpFileData()
        if settings.copy_attributes and times is not None:
            record.creation_time = times.creation_time
        if times is not None:
            record.last_write_time = times.last_write_time
        if method & ComparisonMethod.SIZE:
            record.origin_size = get_size(origin_file_path, follow)
        if needs_attributes:
            record.file_attributes = attributes
        if method & ComparisonMethod.FILE_CONTENTS_SHA1:
            record.sha1 = compute_file_sha1(origin_file_path)
        self.database.files[origin_file_path] = record

    # Deletion

    def _delete_pass(self) -> None:
        self._set_state(RunState.DELETING)
        self.results.message = "Deleting removed files..."
        file_candidates, dir_candidates = self._deletion_candidates()

        for origin_file_path in file_candidates:
            self._check_cancelled()
            if self._is_kept(origin_file_path) or self._still_in_origin(origin_file_path, is_dir=False):
                continue
            self._delete_file(origin_file_path)

        for origin_dir_path in sorted(dir_candidates, key=_depth, reverse=True):
            self._check_cancelled()
            if origin_dir_path == self.origin_base_dir_path:
                continue
            if (
                origin_dir_path in self.results.successful_directories
                or origin_dir_path in self.results.failed_directories
                or self._still_in_origin(origin_dir_path, is_dir=True)
            ):
                continue
            self._delete_directory(origin_dir_path)

    def _deletion_candidates(self) -> tuple[list[str], list[str]]:
        """Origin paths that may have disappeared since they were backed up."""
        if self.database is not None:
            return list(self.database.files), list(self.database.directories)

        dest_enumerator = TreeEnumerator(
            self.dest_base_dir_path, self.settings.regexes, SymbolicLinkHandling.DIRECT
        )
        revisions = self._versioning.revisions_dir_path

        def outside_revisions(path: str) -> bool:
            return revisions is None or not path.startswith(revisions)

        files = [self._to_origin(p) for p in dest_enumerator.files() if outside_revisions(p)]
        directories = [self._to_origin(p) for p in dest_enumerator.directories() if outside_revisions(p)]
        return files, directories

    def _is_kept(self, origin_file_path: str) -> bool:
        results = self.results
        return (
            origin_file_path in results.successful_files
            or origin_file_path in results.failed_files
            or (results.unchanged_files is not None and origin_file_path in results.unchanged_files)
        )

    def _still_in_origin(self, origin_path: str, is_dir: bool) -> bool:
        """Entries that exist and are not excluded were skipped, not removed."""
        if not os.path.lexists(os.path.normpath(origin_path)):
            return False
        regexes = self.settings.regexes
        if is_dir:
            return not regexes.is_excluded_directory(origin_path, self.origin_base_dir_path)
        return not self._is_ignored_file(origin_path)

    def _delete_file(self, origin_file_path: str) -> None:
        dest_file_path = self._to_dest(origin_file_path)
        if not os.path.lexists(dest_file_path):
            if self.database is not None:
                self.database.files.pop(origin_file_path, None)
            return
        try:
            if self.settings.overwrite_readonly and not os.path.islink(dest_file_path):
                clear_attributes(dest_file_path, FileAttributes.READONLY)
            self._versioning.discard_file(dest_file_path)
        except OSError as e:
            logger.error("Failed to delete %s: %s", dest_file_path, e)
            self.results.message = f"Failed to delete {dest_file_path}: {e}"
            return
        if self.results.deleted_files is not None:
            self.results.deleted_files.add(origin_file_path)
        if self.database is not None:
            self.database.files.pop(origin_file_path, None)

    def _delete_directory(self, origin_dir_path: str) -> None:
        dest_dir_path = self._to_dest(origin_dir_path)
        if not os.path.lexists(os.path.normpath(dest_dir_path)):
            if self.database is not None:
                self.database.directories.pop(origin_dir_path, None)
            return
        try:
            self._versioning.discard_directory(dest_dir_path)
        except OSError as e:
            logger.error("Failed to delete directory %s: %s", dest_dir_path, e)
            self.results.message = f"Failed to delete directory {dest_dir_path}: {e}"
            return
        if self.results.deleted_directories is not None:
            self.results.deleted_directories.add(origin_dir_path)
        if self.database is not None:
            self.database.directories.pop(origin_dir_path, None)
