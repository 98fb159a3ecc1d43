"""Tests for versioning of replaced and deleted destination entries."""

from __future__ import annotations

import os
import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from backupagent.core.paths import qualify_directory_path
from backupagent.core.types import ConfigurationError, VersioningMethod
from backupagent.sync.versioning import VersioningPolicy

START = datetime(2024, 3, 1, 9, 5, 7)
STAMP = "2024-03-01_090507"


@pytest.fixture
def dest_root(tmp_path: Path) -> str:
    (tmp_path / "dest" / "sub").mkdir(parents=True)
    (tmp_path / "dest" / "sub" / "report.txt").write_text("old")
    return qualify_directory_path(tmp_path / "dest")


@pytest.fixture
def revisions(tmp_path: Path) -> str:
    return qualify_directory_path(tmp_path / "revisions")


def policy(method: VersioningMethod, dest_root: str, revisions: str | None = None) -> VersioningPolicy:
    return VersioningPolicy(method, dest_root, revisions, START)


class TestRevisionPaths:
    """Tests for revision_path_for."""

    def test_replace_mirrors_layout(self, dest_root: str, revisions: str) -> None:
        path = policy(VersioningMethod.REPLACE, dest_root, revisions).revision_path_for(
            dest_root + os.path.join("sub", "report.txt")
        )
        assert path == revisions + os.path.join("sub", "report.txt")

    def test_directory_timestamp(self, dest_root: str, revisions: str) -> None:
        path = policy(VersioningMethod.DIRECTORY_TIMESTAMP, dest_root, revisions).revision_path_for(
            dest_root + os.path.join("sub", "report.txt")
        )
        assert path == revisions + os.path.join(STAMP, "sub", "report.txt")

    def test_file_timestamp(self, dest_root: str, revisions: str) -> None:
        path = policy(VersioningMethod.FILE_TIMESTAMP, dest_root, revisions).revision_path_for(
            dest_root + os.path.join("sub", "report.txt")
        )
        assert path == revisions + os.path.join("sub", f"report.txt_{STAMP}.txt")

    def test_file_timestamp_without_extension(self, dest_root: str, revisions: str) -> None:
        path = policy(VersioningMethod.FILE_TIMESTAMP, dest_root, revisions).revision_path_for(
            dest_root + os.path.join("sub", "Makefile")
        )
        assert path == revisions + os.path.join("sub", f"Makefile_{STAMP}")

    def test_missing_revisions_dir(self, dest_root: str) -> None:
        with pytest.raises(ConfigurationError):
            policy(VersioningMethod.REPLACE, dest_root).validate()

    def test_revision_path_needs_revisions_dir(self, dest_root: str) -> None:
        with pytest.raises(ConfigurationError):
            policy(VersioningMethod.FILE_TIMESTAMP, dest_root).revision_path_for(dest_root + "a.txt")


class TestDiscardFile:
    """Tests for discard_file."""

    def test_permanent_deletion(self, dest_root: str) -> None:
        target = dest_root + os.path.join("sub", "report.txt")
        assert policy(VersioningMethod.PERMANENT_DELETION, dest_root).discard_file(target) is None
        assert not os.path.exists(target)

    @pytest.mark.parametrize(
        "method",
        [VersioningMethod.REPLACE, VersioningMethod.DIRECTORY_TIMESTAMP, VersioningMethod.FILE_TIMESTAMP],
    )
    def test_moving_methods_keep_contents(self, dest_root: str, revisions: str, method: VersioningMethod) -> None:
        target = dest_root + os.path.join("sub", "report.txt")

        revision = policy(method, dest_root, revisions).discard_file(target)

        assert revision is not None
        assert not os.path.exists(target)
        assert Path(revision).read_text() == "old"

    def test_replace_overwrites_previous_revision(self, dest_root: str, revisions: str) -> None:
        versioning = policy(VersioningMethod.REPLACE, dest_root, revisions)
        target = dest_root + os.path.join("sub", "report.txt")
        versioning.discard_file(target)
        Path(target).write_text("newer")

        revision = versioning.discard_file(target)

        assert Path(revision).read_text() == "newer"

    def test_recycle_bin(self, dest_root: str) -> None:
        target = dest_root + os.path.join("sub", "report.txt")
        with patch("backupagent.sync.versioning.send2trash") as mock_trash:
            policy(VersioningMethod.RECYCLE_BIN, dest_root).discard_file(target)
        mock_trash.assert_called_once_with(target)

    def test_recycle_bin_unavailable_deletes(self, dest_root: str) -> None:
        target = dest_root + os.path.join("sub", "report.txt")
        with patch("backupagent.sync.versioning.send2trash", side_effect=OSError("no trash")):
            policy(VersioningMethod.RECYCLE_BIN, dest_root).discard_file(target)
        assert not os.path.exists(target)


class TestDiscardDirectory:
    """Tests for discard_directory."""

    def test_permanent_deletion(self, dest_root: str) -> None:
        empty = dest_root + "empty" + os.sep
        os.mkdir(empty)
        policy(VersioningMethod.PERMANENT_DELETION, dest_root).discard_directory(empty)
        assert not os.path.exists(empty)

    def test_moving_method_recreates_directory(self, dest_root: str, revisions: str) -> None:
        empty = dest_root + "empty" + os.sep
        os.mkdir(empty)

        revision = policy(VersioningMethod.DIRECTORY_TIMESTAMP, dest_root, revisions).discard_directory(empty)

        assert not os.path.exists(empty)
        assert os.path.isdir(revision)

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
    def test_linked_directory_removed_as_link(self, tmp_path: Path, dest_root: str) -> None:
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "keep.txt").write_text("keep")
        link = Path(dest_root) / "link"
        link.symlink_to(outside, target_is_directory=True)

        policy(VersioningMethod.PERMANENT_DELETION, dest_root).discard_directory(str(link) + os.sep)

        assert not os.path.lexists(link)
        assert (outside / "keep.txt").read_text() == "keep"
