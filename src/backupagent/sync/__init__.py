"""Backup and restore operations.

Architecture:
    BackupManager → BackupController → TreeEnumerator / ChangeDetector → CryptoCodec

Components:
- **BackupManager**: Admits one run per backup pair, cancels running backups
- **BackupController**: Structure pass, file pass, deletion pass, retries
- **RestoreController**: Full restore or attribute-only restore
- **TreeEnumerator**: Depth-first listing with exclusions and link policy
- **ChangeDetector**: Database- or filesystem-based unchanged-file checks
- **VersioningPolicy**: Deletion, recycle bin or revisions for replaced entries
"""

from backupagent.sync.cancellation import CancellationToken
from backupagent.sync.change_detector import (
    ChangeDetector,
    DatabaseChangeDetector,
    FilesystemChangeDetector,
)
from backupagent.sync.controller import BackupController
from backupagent.sync.enumerator import TreeEnumerator, reproduce_link
from backupagent.sync.ignore import ExclusionPatterns, convert_to_regex
from backupagent.sync.lock import PairLock
from backupagent.sync.manager import ALREADY_RUNNING_MESSAGE, BackupManager
from backupagent.sync.restore import RestoreController
from backupagent.sync.versioning import VersioningPolicy

__all__ = [
    "ALREADY_RUNNING_MESSAGE",
    "BackupController",
    "BackupManager",
    "CancellationToken",
    "ChangeDetector",
    "DatabaseChangeDetector",
    "ExclusionPatterns",
    "FilesystemChangeDetector",
    "PairLock",
    "RestoreController",
    "TreeEnumerator",
    "VersioningPolicy",
    "convert_to_regex",
    "reproduce_link",
]
