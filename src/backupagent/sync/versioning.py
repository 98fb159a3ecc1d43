"""Versioning of superseded and deleted destination entries.

This module provides:
- VersioningPolicy: discards a destination file or directory by deleting it,
  sending it to the recycle bin, or moving it into a revisions directory
  (plain, under a per-run timestamp directory, or with a timestamp suffix)
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
from datetime import datetime

from send2trash import send2trash

from backupagent.core.attributes import (
    FileAttributes,
    get_attributes,
    get_times,
    set_attributes,
    set_times,
)
from backupagent.core.paths import qualify_directory_path
from backupagent.core.types import ConfigurationError, VersioningMethod

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H%M%S"


def move_entry(source: str, target: str) -> None:
    """Move a file or link, falling back to copy+delete across devices."""
    try:
        os.replace(source, target)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        shutil.copy2(source, target, follow_symlinks=False)
        os.remove(source)


class VersioningPolicy:
    """Decides what happens to destination entries that are replaced or deleted.

    Attributes:
        method: The versioning method.
        dest_base_dir_path: Canonical destination root.
        revisions_dir_path: Canonical revisions root (moving methods only).
        timestamp: Run timestamp used by the timestamp methods.
        overwrite_readonly: Unprotect read-only revisions before overwriting.
    """

    def __init__(
        self,
        method: VersioningMethod,
        dest_base_dir_path: str,
        revisions_dir_path: str | None = None,
        start_time: datetime | None = None,
        overwrite_readonly: bool = False,
    ) -> None:
        self.method = method
        self.dest_base_dir_path = dest_base_dir_path
        self.revisions_dir_path = qualify_directory_path(revisions_dir_path) if revisions_dir_path else None
        self.timestamp = (start_time or datetime.now()).strftime(TIMESTAMP_FORMAT)
        self.overwrite_readonly = overwrite_readonly

    @property
    def keeps_revisions(self) -> bool:
        return self.method.needs_revisions_dir

    def validate(self) -> None:
        """Raise ConfigurationError if the method lacks a revisions directory."""
        if self.keeps_revisions and not self.revisions_dir_path:
            raise ConfigurationError(
                f"Versioning method '{self.method.value}' requires a revisions directory"
            )

    def revision_path_for(self, dest_path: str) -> str:
        """Compute where a destination entry is kept as a revision."""
        if self.revisions_dir_path is None:
            raise ConfigurationError(
                f"Versioning method '{self.method.value}' requires a revisions directory"
            )
        relative = dest_path[len(self.dest_base_dir_path):]
        if self.method == VersioningMethod.DIRECTORY_TIMESTAMP:
            return os.path.join(self.revisions_dir_path, self.timestamp, relative)
        if self.method == VersioningMethod.FILE_TIMESTAMP and not relative.endswith(os.sep):
            ext = os.path.splitext(relative)[1]
            return os.path.join(self.revisions_dir_path, f"{relative}_{self.timestamp}{ext}")
        return os.path.join(self.revisions_dir_path, relative)

    def discard_file(self, dest_file_path: str) -> str | None:
        """Remove a destination file according to the method.

        Returns:
            The revision path the file was moved to, if any.
        """
        if self.method == VersioningMethod.PERMANENT_DELETION:
            os.remove(dest_file_path)
            logger.info("Deleted %s", dest_file_path)
            return None
        if self.method == VersioningMethod.RECYCLE_BIN:
            self._recycle(dest_file_path, os.remove)
            return None

        revision_path = self.revision_path_for(dest_file_path)
        os.makedirs(os.path.dirname(revision_path), exist_ok=True)
        self._move_file(dest_file_path, revision_path)
        logger.info("Moved %s to %s", dest_file_path, revision_path)
        return revision_path

    def discard_directory(self, dest_dir_path: str) -> str | None:
        """Remove an (emptied) destination directory according to the method.

        Linked directories are removed as links; their targets are never touched.
        """
        plain_path = os.path.normpath(dest_dir_path)
        if os.path.islink(plain_path):
            if self.keeps_revisions:
                revision_path = os.path.normpath(self.revision_path_for(dest_dir_path))
                os.makedirs(os.path.dirname(revision_path), exist_ok=True)
                move_entry(plain_path, revision_path)
                logger.info("Moved link %s to %s", plain_path, revision_path)
                return revision_path
            if self.method == VersioningMethod.RECYCLE_BIN:
                self._recycle(plain_path, os.unlink)
            else:
                os.unlink(plain_path)
                logger.info("Deleted link %s", plain_path)
            return None

        if self.method == VersioningMethod.PERMANENT_DELETION:
            os.rmdir(plain_path)
            logger.info("Deleted directory %s", dest_dir_path)
            return None
        if self.method == VersioningMethod.RECYCLE_BIN:
            self._recycle(plain_path, os.rmdir)
            return None

        revision_path = self.revision_path_for(dest_dir_path)
        os.makedirs(revision_path, exist_ok=True)
        self._copy_directory_metadata(plain_path, revision_path)
        os.rmdir(plain_path)
        logger.info("Moved directory %s to %s", dest_dir_path, revision_path)
        return revision_path

    def _recycle(self, path: str, fallback) -> None:
        try:
            send2trash(path)
            logger.info("Sent %s to the recycle bin", path)
        except OSError as e:
            logger.warning("Recycle bin unavailable for %s (%s), deleting permanently", path, e)
            fallback(path)

    def _move_file(self, source: str, target: str) -> None:
        source_attributes: FileAttributes | None = None
        if self.overwrite_readonly:
            source_attributes = get_attributes(source, follow_symlinks=False)
            if os.path.isfile(target) and not os.path.islink(target):
                target_attributes = get_attributes(target)
                if target_attributes & FileAttributes.READONLY:
                    set_attributes(target, target_attributes & ~FileAttributes.READONLY)
        move_entry(source, target)
        if source_attributes is not None and not os.path.islink(target):
            set_attributes(target, source_attributes)

    @staticmethod
    def _copy_directory_metadata(source: str, target: str) -> None:
        try:
            times = get_times(source)
            set_times(target, times.creation_time, times.last_write_time)
            set_attributes(target, get_attributes(source))
        except OSError as e:
            logger.warning("Could not copy directory metadata to %s: %s", target, e)
