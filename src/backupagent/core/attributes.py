"""File metadata helpers for backupagent.

This module provides:
- FileAttributes flags with the Windows bit values used in the database
- Reading and writing creation/write times
- Reading and writing attribute flags (read-only, hidden, archive)

On POSIX the attribute model is emulated: READONLY is the absence of
owner-write permission, HIDDEN is a leading dot, REPARSE_POINT is a
symbolic link, and ARCHIVE is never set. Creation time is available only
where the platform records a birth time.
"""

from __future__ import annotations

import logging
import os
import stat
import sys
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import IntFlag

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# 100ns intervals between 1601-01-01 and 1970-01-01
_FILETIME_EPOCH_OFFSET = 116444736000000000


class FileAttributes(IntFlag):
    NONE = 0
    READONLY = 0x1
    HIDDEN = 0x2
    SYSTEM = 0x4
    DIRECTORY = 0x10
    ARCHIVE = 0x20
    NORMAL = 0x80
    REPARSE_POINT = 0x400


# Bits SetFileAttributes accepts
SETTABLE_ATTRIBUTES = (
    FileAttributes.READONLY | FileAttributes.HIDDEN | FileAttributes.SYSTEM | FileAttributes.ARCHIVE
)


@dataclass(frozen=True)
class FileTimes:
    creation_time: datetime | None
    last_write_time: datetime


def ns_to_datetime(ns: int) -> datetime:
    """Convert a nanosecond timestamp to an aware UTC datetime (microsecond precision)."""
    return EPOCH + timedelta(microseconds=ns // 1000)


def datetime_to_ns(value: datetime) -> int:
    """Convert a datetime back to a nanosecond timestamp."""
    return (value - EPOCH) // timedelta(microseconds=1) * 1000


def _normalize(path: str) -> str:
    # Trailing separators make lstat() follow links
    return os.path.normpath(path)


def _birth_time_ns(st: os.stat_result) -> int | None:
    ns = getattr(st, "st_birthtime_ns", None)
    if ns is None and sys.platform == "win32":
        ns = st.st_ctime_ns
    if ns is None:
        birth = getattr(st, "st_birthtime", None)
        if birth is not None:
            ns = int(birth * 1_000_000_000)
    return ns


def get_times(path: str, follow_symlinks: bool = True) -> FileTimes:
    """Read creation and last write times of a file or directory."""
    st = os.stat(_normalize(path), follow_symlinks=follow_symlinks)
    birth = _birth_time_ns(st)
    return FileTimes(
        creation_time=ns_to_datetime(birth) if birth is not None else None,
        last_write_time=ns_to_datetime(st.st_mtime_ns),
    )


def get_last_write_time(path: str, follow_symlinks: bool = True) -> datetime:
    return get_times(path, follow_symlinks).last_write_time


def get_size(path: str, follow_symlinks: bool = True) -> int:
    return os.stat(_normalize(path), follow_symlinks=follow_symlinks).st_size


def set_times(
    path: str,
    creation_time: datetime | None = None,
    last_write_time: datetime | None = None,
    follow_symlinks: bool = True,
) -> None:
    """Apply creation and/or last write time to a file or directory.

    Creation time is only settable on Windows; elsewhere it is skipped.
    """
    path = _normalize(path)
    if not follow_symlinks and os.utime not in os.supports_follow_symlinks:
        logger.debug("Cannot set times on link itself on this platform: %s", path)
        return

    if last_write_time is not None:
        st = os.stat(path, follow_symlinks=follow_symlinks)
        os.utime(
            path,
            ns=(st.st_atime_ns, datetime_to_ns(last_write_time)),
            follow_symlinks=follow_symlinks,
        )

    if creation_time is not None and sys.platform == "win32":
        _win_set_creation_time(path, creation_time, follow_symlinks)


def get_attributes(path: str, follow_symlinks: bool = True) -> FileAttributes:
    """Read the attribute flags of a file or directory."""
    path = _normalize(path)
    st = os.stat(path, follow_symlinks=follow_symlinks)
    win_attrs = getattr(st, "st_file_attributes", None)
    if win_attrs is not None:
        return FileAttributes(win_attrs & 0xFFFF)

    attrs = FileAttributes.NONE
    if stat.S_ISDIR(st.st_mode):
        attrs |= FileAttributes.DIRECTORY
    elif not st.st_mode & stat.S_IWUSR:
        # Directory write permission governs entry creation, not read-only state
        attrs |= FileAttributes.READONLY
    if os.path.basename(path).startswith("."):
        attrs |= FileAttributes.HIDDEN
    if os.path.islink(path):
        attrs |= FileAttributes.REPARSE_POINT
    if attrs == FileAttributes.NONE:
        attrs = FileAttributes.NORMAL
    return attrs


def set_attributes(path: str, attributes: FileAttributes, follow_symlinks: bool = True) -> None:
    """Apply attribute flags to a file or directory.

    Only bits the platform can represent are applied; on POSIX that is
    READONLY, mapped onto the write permission bits.
    """
    path = _normalize(path)
    if sys.platform == "win32":
        _win_set_attributes(path, int(attributes & SETTABLE_ATTRIBUTES) or int(FileAttributes.NORMAL))
        return

    if not follow_symlinks and os.path.islink(path):
        # Linux has no lchmod
        return
    if os.path.isdir(path):
        return
    mode = stat.S_IMODE(os.stat(path).st_mode)
    if attributes & FileAttributes.READONLY:
        new_mode = mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH)
    else:
        new_mode = mode | stat.S_IWUSR
    if new_mode != mode:
        os.chmod(path, new_mode)


def is_readonly(path: str) -> bool:
    return bool(get_attributes(path) & FileAttributes.READONLY)


def clear_attributes(path: str, flags: FileAttributes) -> FileAttributes:
    """Clear the given flags if present. Returns the attributes before the change."""
    before = get_attributes(path)
    if before & flags:
        set_attributes(path, before & ~flags)
    return before


if sys.platform == "win32":
    import ctypes
    from ctypes import wintypes

    _kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
    _kernel32.CreateFileW.restype = wintypes.HANDLE
    _kernel32.CreateFileW.argtypes = [
        wintypes.LPCWSTR,
        wintypes.DWORD,
        wintypes.DWORD,
        wintypes.LPVOID,
        wintypes.DWORD,
        wintypes.DWORD,
        wintypes.HANDLE,
    ]
    _kernel32.SetFileTime.argtypes = [
        wintypes.HANDLE,
        ctypes.POINTER(wintypes.FILETIME),
        ctypes.POINTER(wintypes.FILETIME),
        ctypes.POINTER(wintypes.FILETIME),
    ]
    _kernel32.SetFileAttributesW.argtypes = [wintypes.LPCWSTR, wintypes.DWORD]
    _kernel32.CloseHandle.argtypes = [wintypes.HANDLE]

    _FILE_WRITE_ATTRIBUTES = 0x100
    _FILE_SHARE_ALL = 0x7
    _OPEN_EXISTING = 3
    _FILE_FLAG_BACKUP_SEMANTICS = 0x02000000
    _FILE_FLAG_OPEN_REPARSE_POINT = 0x00200000
    _INVALID_HANDLE_VALUE = wintypes.HANDLE(-1).value

    def _win_set_attributes(path: str, attributes: int) -> None:
        if not _kernel32.SetFileAttributesW(path, attributes):
            raise ctypes.WinError(ctypes.get_last_error())

    def _win_set_creation_time(path: str, value: datetime, follow_symlinks: bool) -> None:
        ticks = datetime_to_ns(value) // 100 + _FILETIME_EPOCH_OFFSET
        filetime = wintypes.FILETIME(ticks & 0xFFFFFFFF, ticks >> 32)
        flags = _FILE_FLAG_BACKUP_SEMANTICS
        if not follow_symlinks:
            flags |= _FILE_FLAG_OPEN_REPARSE_POINT
        handle = _kernel32.CreateFileW(
            path, _FILE_WRITE_ATTRIBUTES, _FILE_SHARE_ALL, None, _OPEN_EXISTING, flags, None
        )
        if handle == _INVALID_HANDLE_VALUE:
            raise ctypes.WinError(ctypes.get_last_error())
        try:
            if not _kernel32.SetFileTime(handle, ctypes.byref(filetime), None, None):
                raise ctypes.WinError(ctypes.get_last_error())
        finally:
            _kernel32.CloseHandle(handle)

else:

    def _win_set_attributes(path: str, attributes: int) -> None:
        raise NotImplementedError

    def _win_set_creation_time(path: str, value: datetime, follow_symlinks: bool) -> None:
        raise NotImplementedError
