"""Exclusion patterns for backed-up trees.

Patterns are written one per line (or separated by "|"):
- "*" matches any run of characters, "?" at most one character
- A pattern not starting with a separator or "*" is anchored at the origin
  root ("cache/" only matches the top-level cache directory)
- A pattern ending with a separator also matches everything below it
- An absolute path inside the origin is turned into a root-anchored pattern

Matching is case-insensitive and runs against the path below the origin,
starting with a separator ("/dir/file.txt", "/dir/").
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable

from backupagent.core.paths import relative_suffix

_SPLIT = re.compile(r"[\r\n|]+")


def _normalize_separators(pattern: str) -> str:
    if os.altsep:
        pattern = pattern.replace(os.altsep, os.sep)
    return pattern


def convert_to_regex(pattern: str, origin_base_dir_path: str | None = None) -> re.Pattern[str]:
    """Compile a single exclusion pattern.

    Args:
        pattern: The user pattern.
        origin_base_dir_path: Canonical origin path; when given, absolute
            patterns inside it are made relative to it.
    """
    pattern = _normalize_separators(pattern.strip())
    if (
        origin_base_dir_path is not None
        and os.path.isabs(pattern)
        and os.path.normcase(pattern).startswith(os.path.normcase(origin_base_dir_path))
    ):
        pattern = relative_suffix(pattern, origin_base_dir_path)

    regex = "^"
    if not pattern.startswith((os.sep, "*")):
        regex += re.escape(os.sep)
    regex += re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".?")
    regex += ".*$" if pattern.endswith(os.sep) else "$"
    return re.compile(regex, re.IGNORECASE)


class ExclusionPatterns:
    """Compiled exclusion rules for one origin tree.

    Example:
        patterns = ExclusionPatterns.from_pattern_string("*.tmp|build/", origin)
        patterns.is_excluded_directory(origin + "build" + os.sep)  # True
    """

    def __init__(self, regexes: Iterable[re.Pattern[str]] = ()) -> None:
        self.regexes = list(regexes)

    @classmethod
    def from_pattern_string(
        cls, pattern_string: str | None, origin_base_dir_path: str | None = None
    ) -> ExclusionPatterns:
        if not pattern_string:
            return cls()
        return cls(
            convert_to_regex(entry, origin_base_dir_path)
            for entry in _SPLIT.split(pattern_string)
            if entry.strip()
        )

    def __bool__(self) -> bool:
        return bool(self.regexes)

    def matches(self, relative_path: str) -> bool:
        """Match a separator-prefixed path relative to the root."""
        return any(regex.match(relative_path) for regex in self.regexes)

    def is_excluded_directory(self, directory_path: str, root: str) -> bool:
        """Check a directory (with or without trailing separator) under root."""
        if not directory_path.endswith(os.sep):
            directory_path += os.sep
        return self.matches(relative_suffix(directory_path, root))

    def is_excluded_file(self, file_path: str, root: str) -> bool:
        return self.matches(relative_suffix(file_path, root))
