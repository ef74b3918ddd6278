"""Lexical content filter (word patterns + substring checks)."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

LEXICAL_PATTERNS: Sequence[str] = (
    r"\b(fuck\w*|shit\w*|bitch\w*|cunt|whore|slut|dick|cock|pussy)\b",
    r"\b(nazi|hitler|terrorist|bomb|kill|murder|rape|assault)\b",
    r"\b(retard|idiot|moron|loser|freak|dumb|worthless|garbage|trash)\b",
    r"\b(nigger|faggot)\b",
)

# Caught even inside other words ("bullshit", "dumbass").
SUBSTRING_TERMS: Sequence[str] = (
    "fuck",
    "shit",
    "bitch",
    "cunt",
    "whore",
    "slut",
    "nigger",
    "faggot",
    "retard",
    "nazi",
    "hitler",
)

_WORD = re.compile(r"\S+")


@dataclass(frozen=True)
class FilterResult:
    blocked: bool
    cleaned_text: str
    violations: List[str] = field(default_factory=list)


class ContentFilter:
    def __init__(
        self,
        patterns: Optional[Sequence[str]] = None,
        substrings: Optional[Iterable[str]] = None,
    ) -> None:
        self.patterns = [re.compile(p, re.IGNORECASE) for p in (patterns or LEXICAL_PATTERNS)]
        self.substrings = tuple(s.lower() for s in (substrings or SUBSTRING_TERMS))

    def _is_violation(self, word: str) -> bool:
        lowered = word.lower()
        if any(pattern.search(lowered) for pattern in self.patterns):
            return True
        return any(term in lowered for term in self.substrings)

    def filter(self, text: Optional[str]) -> FilterResult:
        if not text or not text.strip():
            return FilterResult(blocked=False, cleaned_text=text or "")
        normalized = text.strip()
        violations = [m.group(0) for m in _WORD.finditer(normalized) if self._is_violation(m.group(0))]
        if not violations:
            return FilterResult(blocked=False, cleaned_text=normalized)
        cleaned = _WORD.sub(
            lambda m: "*" * len(m.group(0)) if self._is_violation(m.group(0)) else m.group(0),
            normalized,
        )
        return FilterResult(blocked=True, cleaned_text=cleaned, violations=violations)

    def is_allowed(self, text: Optional[str]) -> bool:
        return not self.filter(text).blocked
