"""
Token-overlap similarity for cache key lookup.

Jaccard index over lowercase word tokens:
    J(A, B) = |A ∩ B| / |A ∪ B|
Two empty token sets are treated as identical (1.0).
"""

from __future__ import annotations

import re

_WORD = re.compile(r"\w+")


def tokenize(text: str) -> frozenset[str]:
    """Lowercase word tokens of `text`."""
    return frozenset(_WORD.findall(text.lower()))


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a and not b:
        return 1.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def similarity(left: str, right: str) -> float:
    """Jaccard similarity of two strings' word tokens, in [0, 1]."""
    return jaccard(tokenize(left), tokenize(right))
