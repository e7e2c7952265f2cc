"""Small text helpers shared by the scoring and fusion stages."""

from __future__ import annotations

import re

_NON_WORD = re.compile(r"[^\w]")
_WHITESPACE = re.compile(r"\s+")


def query_terms(query: str, min_length: int = 3) -> list[str]:
    """Lowercase query terms of at least *min_length* chars, punctuation stripped."""
    terms: list[str] = []
    for raw in query.lower().split():
        if len(raw) < min_length:
            continue
        term = _NON_WORD.sub("", raw)
        if term:
            terms.append(term)
    return terms


def count_word_matches(term: str, text: str) -> int:
    """Number of whole-word occurrences of *term* in *text* (case-insensitive)."""
    return len(re.findall(rf"\b{re.escape(term)}\b", text, flags=re.IGNORECASE))


def contains_phrase(text: str, phrase: str) -> bool:
    """Whole-word/phrase test used by the keyword classifiers."""
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def dedup_key(text: str) -> str:
    """Lowercased, whitespace-collapsed form used for content deduplication."""
    return normalize_whitespace(text.lower())
