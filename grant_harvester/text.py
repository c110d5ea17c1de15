"""Text normalisation shared by hashing, matching and storage."""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\s]")


def normalize_text(text: str | None) -> str:
    """Trim, lowercase, collapse whitespace and strip punctuation."""

    if not text:
        return ""
    collapsed = _WHITESPACE.sub(" ", text.strip().lower())
    return _NON_WORD.sub("", collapsed).strip()


def normalize_title(title: str | None) -> str:
    if not title:
        return ""
    stripped = _NON_WORD.sub("", title.lower())
    return _WHITESPACE.sub(" ", stripped).strip()


def extract_words(text: str | None) -> list[str]:
    """Lowercased words with punctuation treated as a separator."""

    if not text:
        return []
    return [word for word in _WHITESPACE.split(_NON_WORD.sub(" ", text.lower())) if word]


__all__ = ["extract_words", "normalize_text", "normalize_title"]
