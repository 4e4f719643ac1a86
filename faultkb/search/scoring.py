"""Token-overlap relevance scoring.

Deliberately naive: no stemming, no stop words, no embeddings. A token counts
as found when it appears anywhere in the content as a substring.
"""

from __future__ import annotations

from collections.abc import Callable

# (content, query) -> score in [0, 1]
Scorer = Callable[[str, str], float]


def tokenize(text: str) -> list[str]:
    """Lowercase whitespace tokens."""
    return text.lower().split()


def score_relevance(content: str, query: str) -> float:
    """Fraction of query tokens found in the content. 0.0 for an empty query."""
    tokens = tokenize(query)
    if not tokens:
        return 0.0
    haystack = content.lower()
    matched = sum(1 for token in tokens if token in haystack)
    return min(1.0, matched / len(tokens))
