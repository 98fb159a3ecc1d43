"""Persisted documents: metadata database, run results and the atomic writer."""

from backupagent.data.database import (
    BackedUpDirectoryData,
    BackedUpFileData,
    BackupDatabase,
    load_database,
)
from backupagent.data.results import BackupResults, load_results
from backupagent.data.writer import PersistenceHelper, read_document, write_document

__all__ = [
    "BackedUpDirectoryData",
    "BackedUpFileData",
    "BackupDatabase",
    "BackupResults",
    "PersistenceHelper",
    "load_database",
    "load_results",
    "read_document",
    "write_document",
]
