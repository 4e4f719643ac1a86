"""Knowledge-base retrieval: fault description → popular lexically-overlapping faults.

This is a cheap lexical heuristic, not semantic search. Results are ordered
by popularity (views) among records sharing a token with the first few words
of the description, not by relevance to the full query.
"""

from __future__ import annotations

import logging

from faultkb.knowledge.models import RelatedFault
from faultkb.search.scoring import Scorer, score_relevance
from faultkb.storage.repository import Repository

logger = logging.getLogger(__name__)

MATCH_TOKENS = 3
DEFAULT_LIMIT = 5


class KnowledgeRetriever:
    """Finds prior faults similar to a new description."""

    def __init__(self, repo: Repository, scorer: Scorer = score_relevance) -> None:
        self._repo = repo
        self._scorer = scorer

    def find_similar(self, description: str, limit: int = DEFAULT_LIMIT) -> list[dict]:
        """Return up to ``limit`` dicts with id, description, solution, views."""
        tokens = description.split()[:MATCH_TOKENS]
        if not tokens:
            return []

        rows = self._repo.find_faults_matching_any(tokens, limit=limit)
        logger.debug(f"Knowledge base matched {len(rows)} faults for tokens {tokens}")
        return [
            {
                "id": row["id"],
                "description": row["fault_description"],
                "solution": row["solution"] or "",
                "views": row["views"],
            }
            for row in rows
        ]

    def related_faults(self, description: str, matches: list[dict]) -> list[RelatedFault]:
        """Pair retrieved matches with a token-overlap similarity to the description."""
        return [
            RelatedFault(
                id=m["id"],
                description=m["description"],
                similarity_score=round(self._scorer(m["description"], description), 3),
            )
            for m in matches
        ]

    def suggestions(self, device_type: str, manufacturer: str, limit: int = DEFAULT_LIMIT) -> list[dict]:
        """Most helpful known solutions for a device."""
        return self._repo.get_suggestions(device_type, manufacturer, limit=limit)
