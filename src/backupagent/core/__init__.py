"""Core module - Shared paths, types, crypto, metadata and settings."""

from backupagent.core.attributes import (
    FileAttributes,
    FileTimes,
    get_attributes,
    get_times,
    set_attributes,
    set_times,
)
from backupagent.core.config import (
    BackupSettings,
    load_default_settings,
    load_local_settings,
    load_settings,
)
from backupagent.core.crypto import (
    CryptoCodec,
    CryptoError,
    compute_file_sha1,
    copy_with_compression,
)
from backupagent.core.paths import (
    compute_pair_hash,
    compute_string_sha1,
    get_data_dir,
    get_data_directory_name,
    map_path,
    qualify_directory_path,
)
from backupagent.core.types import (
    BackupCanceledError,
    BackupError,
    ComparisonMethod,
    CompressAlgorithm,
    CompressionLevel,
    CompressionMode,
    ConfigurationError,
    PasswordProtectionScope,
    PersistenceError,
    RunState,
    SymbolicLinkHandling,
    VersioningMethod,
)

__all__ = [
    # Attributes
    "FileAttributes",
    "FileTimes",
    "get_attributes",
    "get_times",
    "set_attributes",
    "set_times",
    # Config
    "BackupSettings",
    "load_default_settings",
    "load_local_settings",
    "load_settings",
    # Crypto
    "CryptoCodec",
    "CryptoError",
    "compute_file_sha1",
    "copy_with_compression",
    # Paths
    "compute_pair_hash",
    "compute_string_sha1",
    "get_data_dir",
    "get_data_directory_name",
    "map_path",
    "qualify_directory_path",
    # Types
    "BackupCanceledError",
    "BackupError",
    "ComparisonMethod",
    "CompressAlgorithm",
    "CompressionLevel",
    "CompressionMode",
    "ConfigurationError",
    "PasswordProtectionScope",
    "PersistenceError",
    "RunState",
    "SymbolicLinkHandling",
    "VersioningMethod",
]
