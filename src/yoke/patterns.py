"""Pattern tables shared by the detectors.

Detection rules are plain data -- an ordered tuple of :class:`SignalPattern`
rows -- evaluated by two folds: :func:`first_match` and :func:`score`.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SignalPattern:
    """One detection rule.

    ``pattern`` is a regular expression unless ``literal`` is set, in which
    case it is matched as a case-insensitive substring.
    """

    category: str
    pattern: str
    weight: float = 1.0
    literal: bool = False
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        source = re.escape(self.pattern) if self.literal else self.pattern
        object.__setattr__(self, "_regex", re.compile(source, re.IGNORECASE))

    def matches(self, text: str) -> bool:
        return bool(self._regex.search(text))


def literal_table(category: str, phrases: Iterable[str], weight: float = 1.0) -> tuple[SignalPattern, ...]:
    """Build a table of literal-substring rules for one category."""
    return tuple(SignalPattern(category, phrase, weight, literal=True) for phrase in phrases)


def regex_table(category: str, patterns: Iterable[str], weight: float = 1.0) -> tuple[SignalPattern, ...]:
    """Build a table of regex rules for one category."""
    return tuple(SignalPattern(category, pattern, weight) for pattern in patterns)


def first_match(
    table: Iterable[SignalPattern],
    text: str,
    *,
    category: str | None = None,
) -> SignalPattern | None:
    """Return the first rule (optionally restricted to *category*) matching *text*."""
    if not text:
        return None
    for row in table:
        if category is not None and row.category != category:
            continue
        if row.matches(text):
            return row
    return None


def score(table: Iterable[SignalPattern], text: str) -> dict[str, float]:
    """Sum rule weights per category over every rule matching *text*."""
    totals: dict[str, float] = {}
    for row in table:
        totals.setdefault(row.category, 0.0)
        if text and row.matches(text):
            totals[row.category] += row.weight
    return totals
