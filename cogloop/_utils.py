"""Shared scoring helpers for the memory and engine layers."""

from __future__ import annotations

import math
import re

_WORD_RE = re.compile(r"[a-z0-9_']+")


def clamp01(value: float, default: float = 0.5) -> float:
    """Clamp potentially noisy collaborator-provided scores into [0, 1]."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(numeric):
        return default
    return max(0.0, min(1.0, numeric))


def tokenize(text: str) -> set[str]:
    """Lower-cased word set used by every overlap-based score."""
    if not text:
        return set()
    return set(_WORD_RE.findall(text.lower()))


# Function words that would otherwise make every node look similar to every query.
STOPWORDS = frozenset(
    """
    a an and are as at be but by did do does for from had has have how i if in
    is it its me my of on or so that the their then there these this to was we
    were what when where which who why will with you your
    """.split()
)


def content_words(text: str) -> set[str]:
    """Word set with stopwords removed."""
    return tokenize(text) - STOPWORDS


def content_overlap(text_a: str, text_b: str) -> float:
    """Jaccard similarity over content words only."""
    words_a = content_words(text_a)
    words_b = content_words(text_b)
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)
