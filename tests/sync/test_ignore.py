"""Tests for exclusion patterns."""

from __future__ import annotations

import os

import pytest

from backupagent.sync.ignore import ExclusionPatterns, convert_to_regex

ROOT = os.sep + os.path.join("home", "user", "docs", "")
SEP = os.sep


def rel(*parts: str) -> str:
    return SEP + SEP.join(parts)


class TestConvertToRegex:
    """Tests for single-pattern compilation."""

    def test_bare_name_matches_top_level_only(self) -> None:
        regex = convert_to_regex("notes.txt")
        assert regex.match(rel("notes.txt"))
        assert not regex.match(rel("sub", "notes.txt"))

    def test_wildcard_prefix_matches_anywhere(self) -> None:
        regex = convert_to_regex("*.tmp")
        assert regex.match(rel("a.tmp"))
        assert regex.match(rel("deep", "er", "b.tmp"))
        assert not regex.match(rel("a.tmp.keep"))

    def test_question_mark_matches_at_most_one_char(self) -> None:
        regex = convert_to_regex("file?.log")
        assert regex.match(rel("file1.log"))
        assert regex.match(rel("file.log"))
        assert not regex.match(rel("file12.log"))

    def test_trailing_separator_matches_subtree(self) -> None:
        regex = convert_to_regex("build" + SEP)
        assert regex.match(rel("build", ""))
        assert regex.match(rel("build", "out", "x.o"))
        assert not regex.match(rel("buildings.txt"))

    def test_case_insensitive(self) -> None:
        assert convert_to_regex("*.TMP").match(rel("x.tmp"))

    def test_regex_metacharacters_are_literal(self) -> None:
        regex = convert_to_regex("a+b(1).txt")
        assert regex.match(rel("a+b(1).txt"))
        assert not regex.match(rel("aab1.txt"))

    def test_absolute_pattern_inside_origin(self) -> None:
        regex = convert_to_regex(ROOT + "cache" + SEP, ROOT)
        assert regex.match(rel("cache", "x"))


class TestExclusionPatterns:
    """Tests for ExclusionPatterns."""

    @pytest.mark.parametrize("separator", ["|", "\n", "\r\n"])
    def test_pattern_string_separators(self, separator: str) -> None:
        patterns = ExclusionPatterns.from_pattern_string(separator.join(["*.tmp", "cache" + SEP]), ROOT)
        assert len(patterns.regexes) == 2

    def test_empty_patterns_exclude_nothing(self) -> None:
        patterns = ExclusionPatterns.from_pattern_string("", ROOT)
        assert not patterns
        assert not patterns.is_excluded_file(ROOT + "a.tmp", ROOT)

    def test_blank_entries_skipped(self) -> None:
        assert len(ExclusionPatterns.from_pattern_string("*.tmp||  |", ROOT).regexes) == 1

    def test_excluded_directory_with_or_without_separator(self) -> None:
        patterns = ExclusionPatterns.from_pattern_string("cache" + SEP, ROOT)
        assert patterns.is_excluded_directory(ROOT + "cache" + SEP, ROOT)
        assert patterns.is_excluded_directory(ROOT + "cache", ROOT)
        assert not patterns.is_excluded_directory(ROOT + "src" + SEP, ROOT)

    def test_excluded_file(self) -> None:
        patterns = ExclusionPatterns.from_pattern_string("*.tmp", ROOT)
        assert patterns.is_excluded_file(ROOT + os.path.join("a", "b.tmp"), ROOT)
        assert not patterns.is_excluded_file(ROOT + "b.txt", ROOT)
