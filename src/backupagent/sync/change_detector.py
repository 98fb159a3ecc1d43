"""Change detection between origin files and their backups.

This module provides:
- DatabaseChangeDetector: compares the origin against recorded metadata
- FilesystemChangeDetector: compares the origin against the destination file

Both walk the same checks in order (archive bit, write time, size, SHA-1,
binary contents) as selected by ComparisonMethod. Any missing piece of
information means "changed".
"""

from __future__ import annotations

import filecmp
import logging
import os
from typing import Protocol

from backupagent.core.attributes import FileAttributes, get_attributes, get_last_write_time, get_size
from backupagent.core.config import BackupSettings
from backupagent.core.crypto import compute_file_sha1
from backupagent.core.types import ComparisonMethod
from backupagent.data.database import NOT_RECORDED_SIZE, BackupDatabase

logger = logging.getLogger(__name__)


class ChangeDetector(Protocol):
    def is_unchanged(self, origin_file_path: str, dest_file_path: str) -> bool: ...


class _BaseChangeDetector:
    def __init__(
        self,
        settings: BackupSettings,
        is_transformed: bool = False,
        follow_symlinks: bool = True,
    ) -> None:
        """Initialize the detector.

        Args:
            settings: Settings of the run (comparison method, attribute copy).
            is_transformed: Destination bytes differ from the origin
                (encryption or compression is active).
            follow_symlinks: Compare link targets rather than links themselves.
        """
        self.settings = settings
        self.is_transformed = is_transformed
        self.follow_symlinks = follow_symlinks
        self._warned: set[str] = set()

    @property
    def method(self) -> ComparisonMethod:
        return self.settings.comparison_method

    def _warn_once(self, key: str, message: str, *args: object) -> None:
        if key not in self._warned:
            self._warned.add(key)
            logger.warning(message, *args)

    def _has_archive_bit(self, origin_file_path: str) -> bool:
        return bool(get_attributes(origin_file_path, self.follow_symlinks) & FileAttributes.ARCHIVE)

    def _binary_equal(self, origin_file_path: str, dest_file_path: str) -> bool:
        if self.is_transformed:
            self._warn_once(
                "binary",
                "Binary comparison is unavailable with encryption or compression; copying all files",
            )
            return False
        if not os.path.isfile(dest_file_path):
            return False
        return filecmp.cmp(origin_file_path, dest_file_path, shallow=False)


class DatabaseChangeDetector(_BaseChangeDetector):
    """Decide from recorded metadata, reading the destination only when needed."""

    def __init__(
        self,
        settings: BackupSettings,
        database: BackupDatabase,
        is_transformed: bool = False,
        follow_symlinks: bool = True,
    ) -> None:
        super().__init__(settings, is_transformed, follow_symlinks)
        self.database = database

    def is_unchanged(self, origin_file_path: str, dest_file_path: str) -> bool:
        method = self.method
        if method == ComparisonMethod.NO_COMPARISON:
            return False

        data = self.database.files.get(origin_file_path)
        if data is None:
            return False

        if method & ComparisonMethod.ARCHIVE_ATTRIBUTE and self._has_archive_bit(origin_file_path):
            return False

        if method & ComparisonMethod.WRITE_TIME:
            recorded = data.last_write_time
            if recorded is None:
                logger.warning("No recorded write time for %s, using the destination's", origin_file_path)
                if not os.path.lexists(dest_file_path):
                    return False
                recorded = get_last_write_time(dest_file_path, self.follow_symlinks)
                data.last_write_time = recorded
            if get_last_write_time(origin_file_path, self.follow_symlinks) != recorded:
                return False

        if method & ComparisonMethod.SIZE:
            if data.origin_size == NOT_RECORDED_SIZE:
                logger.warning("No recorded size for %s", origin_file_path)
                return False
            if get_size(origin_file_path, self.follow_symlinks) != data.origin_size:
                return False

        if method & ComparisonMethod.FILE_CONTENTS_SHA1:
            if data.sha1 is None:
                logger.warning("No recorded SHA-1 for %s", origin_file_path)
                return False
            if compute_file_sha1(origin_file_path) != data.sha1:
                return False

        if method & ComparisonMethod.FILE_CONTENTS_BINARY:
            if not self._binary_equal(origin_file_path, dest_file_path):
                return False

        return True


class FilesystemChangeDetector(_BaseChangeDetector):
    """Decide by reading the destination file."""

    def is_unchanged(self, origin_file_path: str, dest_file_path: str) -> bool:
        method = self.method
        if method == ComparisonMethod.NO_COMPARISON:
            return False
        if not os.path.lexists(dest_file_path):
            return False

        if method & ComparisonMethod.ARCHIVE_ATTRIBUTE and self._has_archive_bit(origin_file_path):
            return False

        if method & ComparisonMethod.WRITE_TIME:
            if not self.settings.copy_attributes:
                self._warn_once(
                    "write_time",
                    "Write times are not copied, so write time comparison always reports changes",
                )
            origin_time = get_last_write_time(origin_file_path, self.follow_symlinks)
            if origin_time != get_last_write_time(dest_file_path, self.follow_symlinks):
                return False

        if method & ComparisonMethod.SIZE:
            if self.is_transformed:
                self._warn_once(
                    "size", "Size comparison needs the database when encryption or compression is on"
                )
                return False
            if get_size(origin_file_path, self.follow_symlinks) != get_size(
                dest_file_path, self.follow_symlinks
            ):
                return False

        if method & ComparisonMethod.FILE_CONTENTS_SHA1:
            if self.is_transformed:
                self._warn_once(
                    "sha1", "SHA-1 comparison needs the database when encryption or compression is on"
                )
                return False
            if compute_file_sha1(origin_file_path) != compute_file_sha1(dest_file_path):
                return False

        if method & ComparisonMethod.FILE_CONTENTS_BINARY:
            if not self._binary_equal(origin_file_path, dest_file_path):
                return False

        return True
