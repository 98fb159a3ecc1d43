"""Backup settings for backupagent.

This module defines the settings document of a backup pair and the default
document new pairs start from:
- <data_dir>/BackupSettings.json holds the default settings
- <data_dir>/Data/<hash>/BackupSettings.json holds pair-local settings
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from backupagent.core.paths import get_pair_data_dir
from backupagent.core.types import (
    ComparisonMethod,
    CompressAlgorithm,
    CompressionLevel,
    ConfigurationError,
    PasswordProtectionScope,
    PersistenceError,
    SymbolicLinkHandling,
    VersioningMethod,
)
from backupagent.data.writer import delete_document, document_exists, read_document, write_document

if TYPE_CHECKING:
    from backupagent.sync.ignore import ExclusionPatterns

logger = logging.getLogger(__name__)

SETTINGS_FILE_NAME = "BackupSettings.json"

_ENUM_FIELDS = {
    "versioning": VersioningMethod,
    "password_protection_scope": PasswordProtectionScope,
    "compression_level": CompressionLevel,
    "compress_algorithm": CompressAlgorithm,
    "symbolic_link": SymbolicLinkHandling,
}


@dataclass
class BackupSettings:
    """Settings of one backup pair, or the default settings when no pair is set.

    Attributes:
        origin_base_dir_path: Canonical origin directory (None for defaults).
        dest_base_dir_path: Canonical destination directory (None for defaults).
        use_database: Record metadata so unchanged files are detected without
            reading the destination.
        copy_attributes: Copy times and attribute flags to the destination.
        overwrite_readonly: Clear read-only/hidden bits that block overwrites.
        enable_deletion: Mirror deletions from origin into destination.
        versioning: What happens to superseded and deleted destination entries.
        revisions_dir_path: Where REPLACE and timestamp versioning keep old copies.
        record_password: Keep the encryption password for unattended runs.
        password_protection_scope: How a recorded password is protected.
        protected_password: Protected form of the recorded password.
        retry_count: Retry attempts for failed paths.
        retry_wait_ms: Wait before each retry, in milliseconds.
        comparison_method: Change detection strategies.
        ignore_pattern: Exclusion patterns, one per line or "|"-separated.
        compression_level: Compression effort (NO_COMPRESSION disables it).
        compress_algorithm: DEFLATE or GZIP container.
        cancelable: Whether a run may be cancelled.
        symbolic_link: Symbolic link handling policy.
    """

    origin_base_dir_path: str | None = None
    dest_base_dir_path: str | None = None
    use_database: bool = True
    copy_attributes: bool = True
    overwrite_readonly: bool = False
    enable_deletion: bool = False
    versioning: VersioningMethod = VersioningMethod.PERMANENT_DELETION
    revisions_dir_path: str | None = None
    record_password: bool = True
    password_protection_scope: PasswordProtectionScope = PasswordProtectionScope.LOCAL_MACHINE
    protected_password: str | None = None
    retry_count: int = 10
    retry_wait_ms: int = 10000
    comparison_method: ComparisonMethod = ComparisonMethod.WRITE_TIME | ComparisonMethod.SIZE
    ignore_pattern: str = ""
    compression_level: CompressionLevel = CompressionLevel.NO_COMPRESSION
    compress_algorithm: CompressAlgorithm = CompressAlgorithm.DEFLATE
    cancelable: bool = True
    symbolic_link: SymbolicLinkHandling = SymbolicLinkHandling.IGNORE_ONLY_DIRECTORIES

    _regexes: ExclusionPatterns | None = field(default=None, init=False, repr=False, compare=False)
    _regexes_key: tuple[str, str | None] | None = field(
        default=None, init=False, repr=False, compare=False
    )

    @property
    def is_default(self) -> bool:
        return self.origin_base_dir_path is None or self.dest_base_dir_path is None

    @property
    def regexes(self) -> ExclusionPatterns:
        """Compiled exclusion patterns, cached until ignore_pattern changes."""
        key = (self.ignore_pattern, self.origin_base_dir_path)
        if self._regexes is None or self._regexes_key != key:
            from backupagent.sync.ignore import ExclusionPatterns

            self._regexes = ExclusionPatterns.from_pattern_string(
                self.ignore_pattern, self.origin_base_dir_path
            )
            self._regexes_key = key
        return self._regexes

    def to_local(self, origin_base_dir_path: str, dest_base_dir_path: str) -> BackupSettings:
        """Return a pair-local copy; the receiver is left untouched."""
        return dataclasses.replace(
            self,
            origin_base_dir_path=origin_base_dir_path,
            dest_base_dir_path=dest_base_dir_path,
        )

    def validate(self) -> None:
        """Check the settings can drive a run.

        Raises:
            ConfigurationError: If a value is out of range or the versioning
                method needs a revisions directory that is not set.
        """
        if self.retry_count < 0:
            raise ConfigurationError(f"retry_count must be >= 0, got {self.retry_count}")
        if self.retry_wait_ms < 0:
            raise ConfigurationError(f"retry_wait_ms must be >= 0, got {self.retry_wait_ms}")
        if self.versioning.needs_revisions_dir and not self.revisions_dir_path:
            raise ConfigurationError(
                f"Versioning method '{self.versioning.value}' requires a revisions directory"
            )

    # Serialization

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in dataclasses.fields(self):
            if f.name.startswith("_"):
                continue
            value = getattr(self, f.name)
            if f.name == "comparison_method":
                value = int(value)
            elif f.name in _ENUM_FIELDS:
                value = value.value
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupSettings:
        known = {f.name for f in dataclasses.fields(cls) if not f.name.startswith("_")}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.debug("Ignoring unknown settings key %r", key)
                continue
            if key == "comparison_method":
                value = ComparisonMethod(int(value))
            elif key in _ENUM_FIELDS and value is not None:
                value = _ENUM_FIELDS[key](value)
            kwargs[key] = value
        return cls(**kwargs)

    def describe(self) -> str:
        """Human-readable dump used in run logs."""
        lines = []
        for name, value in self.to_dict().items():
            if name == "protected_password":
                value = "<recorded>" if value else None
            elif name == "comparison_method":
                value = ComparisonMethod(value).name
            lines.append(f"  {name}: {value}")
        return "\n".join(lines)

    # Persistence

    def get_path(self, data_dir: Path) -> Path:
        if self.origin_base_dir_path is None or self.dest_base_dir_path is None:
            return get_default_settings_path(data_dir)
        return get_local_settings_path(data_dir, self.origin_base_dir_path, self.dest_base_dir_path)

    def save(self, data_dir: Path) -> None:
        write_document(self.get_path(data_dir), self.to_dict())
        logger.debug("Settings saved to %s", self.get_path(data_dir))

    def delete(self, data_dir: Path) -> None:
        delete_document(self.get_path(data_dir))


def get_default_settings_path(data_dir: Path) -> Path:
    return data_dir / SETTINGS_FILE_NAME


def get_local_settings_path(data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str) -> Path:
    return get_pair_data_dir(data_dir, origin_base_dir_path, dest_base_dir_path) / SETTINGS_FILE_NAME


def _read_settings(path: Path) -> BackupSettings | None:
    if not document_exists(path):
        return None
    try:
        return BackupSettings.from_dict(read_document(path))
    except (PersistenceError, TypeError, ValueError):
        logger.exception("Could not read settings %s", path)
        return None


def load_default_settings(data_dir: Path) -> BackupSettings:
    """Load the default settings document, or built-in defaults."""
    settings = _read_settings(get_default_settings_path(data_dir)) or BackupSettings()
    # The default document is never bound to a pair
    settings.origin_base_dir_path = None
    settings.dest_base_dir_path = None
    return settings


def load_local_settings(
    data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str
) -> BackupSettings | None:
    """Load the pair-local settings document, if one exists."""
    settings = _read_settings(get_local_settings_path(data_dir, origin_base_dir_path, dest_base_dir_path))
    if settings is not None:
        settings.origin_base_dir_path = origin_base_dir_path
        settings.dest_base_dir_path = dest_base_dir_path
    return settings


def load_settings(data_dir: Path, origin_base_dir_path: str, dest_base_dir_path: str) -> BackupSettings:
    """Load pair-local settings, falling back to the default document."""
    local = load_local_settings(data_dir, origin_base_dir_path, dest_base_dir_path)
    if local is not None:
        return local
    return load_default_settings(data_dir)
