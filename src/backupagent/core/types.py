"""Shared types for backupagent.

This module defines the enums used by settings, the controllers and the
persisted documents, and the exception hierarchy raised by the engine.
"""

from __future__ import annotations

from enum import Enum, IntFlag


class ComparisonMethod(IntFlag):
    """Strategies used to decide whether a file changed since the last run.

    Flags are combined; an empty combination means every file is copied.
    """

    NO_COMPARISON = 0
    ARCHIVE_ATTRIBUTE = 1
    WRITE_TIME = 2
    SIZE = 4
    FILE_CONTENTS_SHA1 = 8
    FILE_CONTENTS_BINARY = 16


class VersioningMethod(str, Enum):
    """What happens to a destination entry that is superseded or deleted."""

    PERMANENT_DELETION = "permanent_deletion"
    RECYCLE_BIN = "recycle_bin"
    REPLACE = "replace"
    DIRECTORY_TIMESTAMP = "directory_timestamp"
    FILE_TIMESTAMP = "file_timestamp"

    @property
    def needs_revisions_dir(self) -> bool:
        return self in (
            VersioningMethod.REPLACE,
            VersioningMethod.DIRECTORY_TIMESTAMP,
            VersioningMethod.FILE_TIMESTAMP,
        )


class SymbolicLinkHandling(str, Enum):
    """How symbolic links found in the origin tree are treated."""

    IGNORE_ONLY_DIRECTORIES = "ignore_only_directories"
    IGNORE_ALL = "ignore_all"
    FOLLOW = "follow"
    DIRECT = "direct"


class CompressionLevel(str, Enum):
    """Compression effort. NO_COMPRESSION disables the compression stage."""

    NO_COMPRESSION = "no_compression"
    FASTEST = "fastest"
    OPTIMAL = "optimal"
    SMALLEST_SIZE = "smallest_size"

    @property
    def zlib_level(self) -> int:
        return _ZLIB_LEVELS[self]


_ZLIB_LEVELS = {
    CompressionLevel.NO_COMPRESSION: 0,
    CompressionLevel.FASTEST: 1,
    CompressionLevel.OPTIMAL: 6,
    CompressionLevel.SMALLEST_SIZE: 9,
}


class CompressAlgorithm(str, Enum):
    """Compression container written between plaintext and cipher."""

    DEFLATE = "deflate"
    GZIP = "gzip"


class CompressionMode(str, Enum):
    COMPRESS = "compress"
    DECOMPRESS = "decompress"


class PasswordProtectionScope(str, Enum):
    """Where a recorded password can be recovered.

    LOCAL_MACHINE binds it to this installation's secret file,
    CURRENT_USER to the user's OS keyring.
    """

    LOCAL_MACHINE = "local_machine"
    CURRENT_USER = "current_user"


class RunState(str, Enum):
    """Lifecycle of a backup or restore run."""

    INITIALIZING = "initializing"
    COPYING_STRUCTURE = "copying_structure"
    COPYING_FILES = "copying_files"
    DELETING = "deleting"
    RETRYING = "retrying"
    FINISHED = "finished"
    CANCELED = "canceled"


class BackupError(Exception):
    """Base exception for backup engine errors."""


class ConfigurationError(BackupError):
    """Raised when settings cannot drive a run (e.g. missing revisions directory)."""


class PersistenceError(BackupError):
    """Raised when a persisted document can be neither written nor recovered."""


class BackupCanceledError(BackupError):
    """Raised when a run stops because cancellation was requested."""
