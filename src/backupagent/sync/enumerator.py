"""Directory tree enumeration for backups.

This module provides:
- TreeEnumerator: restartable depth-first listing of directories and files
  under a root, with exclusion pruning and a symbolic link policy
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass, field

from backupagent.core.types import SymbolicLinkHandling
from backupagent.sync.ignore import ExclusionPatterns

logger = logging.getLogger(__name__)


@dataclass
class _Listing:
    files: list[str] = field(default_factory=list)
    # (path with trailing separator, is a symbolic link)
    directories: list[tuple[str, bool]] = field(default_factory=list)


def reproduce_link(source: str, target: str) -> None:
    """Recreate the symbolic link at source as target, pointing at the same place."""
    source = os.path.normpath(source)
    target = os.path.normpath(target)
    link_target = os.readlink(source)
    if os.path.lexists(target):
        if os.path.islink(target) and os.readlink(target) == link_target:
            return
        if os.path.isdir(target) and not os.path.islink(target):
            os.rmdir(target)
        else:
            os.remove(target)
    os.symlink(link_target, target, target_is_directory=os.path.isdir(source))
    logger.debug("Reproduced link %s -> %s", target, link_target)


class TreeEnumerator:
    """Enumerate a directory tree.

    directories() yields the root first and then every non-excluded
    descendant in pre-order; files() yields each directory's files before
    descending. Directory paths always end with a separator. Both methods
    start a new traversal on every call.

    Subtrees that cannot be listed (permissions, vanished directories,
    symbolic link loops, overlong paths) are logged and treated as empty.
    """

    def __init__(
        self,
        root: str,
        exclusions: ExclusionPatterns | None = None,
        symbolic_link: SymbolicLinkHandling = SymbolicLinkHandling.IGNORE_ONLY_DIRECTORIES,
    ) -> None:
        self.root = root if root.endswith(os.sep) else root + os.sep
        self.exclusions = exclusions or ExclusionPatterns()
        self.symbolic_link = symbolic_link

    @property
    def _ignores_links(self) -> bool:
        return self.symbolic_link in (
            SymbolicLinkHandling.IGNORE_ONLY_DIRECTORIES,
            SymbolicLinkHandling.IGNORE_ALL,
        )

    def _root_is_skipped(self) -> bool:
        if not os.path.isdir(self.root):
            logger.warning("Directory not found: %s", self.root)
            return True
        if self._ignores_links and os.path.islink(os.path.normpath(self.root)):
            logger.info("Skipping symbolic link root: %s", self.root)
            return True
        return False

    def _descends_into(self, is_link: bool) -> bool:
        # Linked directories are entered only when following links
        return not is_link or self.symbolic_link == SymbolicLinkHandling.FOLLOW

    def directories(self) -> Iterator[str]:
        if self._root_is_skipped():
            return
        yield self.root
        yield from self._walk_directories(self.root)

    def files(self, filter_files: bool = False) -> Iterator[str]:
        """Yield file paths.

        Args:
            filter_files: Also drop files matching the exclusion patterns.
        """
        if self._root_is_skipped():
            return
        for path in self._walk_files(self.root):
            if filter_files and self.exclusions.is_excluded_file(path, self.root):
                continue
            yield path

    def _walk_directories(self, directory: str) -> Iterator[str]:
        listing = self._scan(directory)
        if listing is None:
            return
        for path, is_link in listing.directories:
            yield path
            if self._descends_into(is_link):
                yield from self._walk_directories(path)

    def _walk_files(self, directory: str) -> Iterator[str]:
        listing = self._scan(directory)
        if listing is None:
            return
        yield from listing.files
        for path, is_link in listing.directories:
            if self._descends_into(is_link):
                yield from self._walk_files(path)

    def _scan(self, directory: str) -> _Listing | None:
        """List one directory, applying the link policy and exclusions."""
        listing = _Listing()
        try:
            with os.scandir(directory) as entries:
                for entry in sorted(entries, key=lambda e: e.name):
                    self._classify(entry, listing)
        except OSError as e:
            # PermissionError, FileNotFoundError, ELOOP, ENAMETOOLONG...
            logger.warning("Cannot enumerate %s: %s", directory, e)
            return None
        return listing

    def _classify(self, entry: os.DirEntry[str], listing: _Listing) -> None:
        try:
            is_link = entry.is_symlink()
            is_dir = entry.is_dir(follow_symlinks=True)
            target_exists = is_dir or entry.is_file(follow_symlinks=True)
        except OSError as e:
            logger.warning("Cannot inspect %s: %s", entry.path, e)
            return

        if is_link and self._ignores_links and is_dir:
            logger.debug("Ignoring linked directory: %s", entry.path)
            return
        if is_link and self.symbolic_link == SymbolicLinkHandling.IGNORE_ALL:
            logger.debug("Ignoring linked file: %s", entry.path)
            return
        if is_link and not target_exists and self.symbolic_link != SymbolicLinkHandling.DIRECT:
            logger.warning("Skipping broken symbolic link: %s", entry.path)
            return

        if is_dir:
            path = entry.path + os.sep
            if self.exclusions.is_excluded_directory(path, self.root):
                logger.debug("Excluded directory: %s", path)
                return
            listing.directories.append((path, is_link))
        else:
            listing.files.append(entry.path)
