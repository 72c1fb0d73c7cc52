"""
Exit-code pattern matching and transition specificity.

Patterns use ``*`` (any sequence, possibly empty) and ``?`` (exactly one
character); every other character is literal and the whole exit code must
be consumed.  Both functions are pure and safe to call from concurrently
running flows; compiled patterns are cached process-wide.
"""

from __future__ import annotations

import re
from functools import cmp_to_key, lru_cache


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    for ch in pattern:
        if ch == "*":
            # Runs of stars match the same thing as a single star
            if not parts or parts[-1] != ".*":
                parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL)


def match_pattern(pattern: str, candidate: str) -> bool:
    """Return True if ``candidate`` matches ``pattern`` in full."""
    return _compile(pattern).fullmatch(candidate) is not None


def compare_patterns(a: str, b: str) -> int:
    """Total order over patterns, most specific first.

    Returns a negative number when ``a`` is more specific than ``b``.
    In priority order: identical patterns are equal; a pattern without
    ``*`` beats one with ``*``; fewer ``*`` wins; fewer ``?`` wins; among
    wildcard patterns the shorter wins; reverse lexicographic order breaks
    the remaining ties.
    """
    if a == b:
        return 0

    a_stars, b_stars = a.count("*"), b.count("*")
    if a_stars != b_stars:
        # Covers the zero-star case: 0 < n always sorts first
        return -1 if a_stars < b_stars else 1

    a_marks, b_marks = a.count("?"), b.count("?")
    if a_marks != b_marks:
        return -1 if a_marks < b_marks else 1

    has_wildcard = a_stars > 0 or a_marks > 0
    if has_wildcard and len(a) != len(b):
        return -1 if len(a) < len(b) else 1

    return -1 if a > b else 1


specificity_key = cmp_to_key(compare_patterns)
