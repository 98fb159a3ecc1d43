"""Shared pytest fixtures for backupagent tests."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from backupagent.core.config import BackupSettings
from backupagent.core.paths import qualify_directory_path


def make_tree(root: Path, layout: dict[str, str | bytes | dict | None]) -> None:
    """Create files and directories below root.

    Values are file contents (str or bytes), nested dicts for
    subdirectories, or None for an empty directory.
    """
    root.mkdir(parents=True, exist_ok=True)
    for name, content in layout.items():
        path = root / name
        if isinstance(content, dict):
            make_tree(path, content)
        elif content is None:
            path.mkdir(parents=True, exist_ok=True)
        elif isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)


def bump_mtime(path: Path, seconds: int = 10) -> None:
    """Move a file's write time forward so it looks modified."""
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + seconds * 1_000_000_000))


@pytest.fixture(autouse=True)
def _reset_cli_logging() -> Generator[None, None, None]:
    """Drop handlers installed by CLI commands so they don't outlive a test."""
    yield
    logger = logging.getLogger("backupagent")
    for handler in list(logger.handlers):
        if getattr(handler, "_backupagent_cli", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolated data directory, also exported through BACKUPAGENT_DATA_DIR."""
    path = tmp_path / "data"
    path.mkdir()
    monkeypatch.setenv("BACKUPAGENT_DATA_DIR", str(path))
    return path


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    path = tmp_path / "origin"
    path.mkdir()
    return path


@pytest.fixture
def dest(tmp_path: Path) -> Path:
    return tmp_path / "dest"


@pytest.fixture
def tree() -> Callable[[Path, dict], None]:
    return make_tree


@pytest.fixture
def bump() -> Callable[[Path, int], None]:
    return bump_mtime


@pytest.fixture
def settings_for(origin: Path, dest: Path) -> Callable[..., BackupSettings]:
    """Build pair settings for origin -> dest that never wait between retries."""

    def factory(**overrides: object) -> BackupSettings:
        values: dict[str, object] = {"retry_count": 0, "retry_wait_ms": 0}
        values.update(overrides)
        return BackupSettings(
            origin_base_dir_path=qualify_directory_path(origin),
            dest_base_dir_path=qualify_directory_path(dest),
            **values,
        )

    return factory
