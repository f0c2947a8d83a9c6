"""
Keyword Index - Term-overlap similarity over summary text.

Used when no embedding backend is available, and kept in step with the
vector index so a failed vector search can be answered from it:
- Terms are lowercase words longer than 3 characters, minus stop words
- Similarity is the Jaccard index of the two term sets
- Zero-score contexts are never returned
"""

import logging
import re
from typing import Dict, List, Set

from .models import ContextSummary, SimilarContext

logger = logging.getLogger(__name__)

MIN_TERM_LENGTH = 4

STOP_WORDS = {
    'the', 'and', 'that', 'have', 'for', 'not', 'with', 'you', 'this',
    'but', 'his', 'from', 'they', 'she', 'will', 'would', 'there',
    'their', 'what', 'about', 'which', 'when', 'make', 'like', 'time',
    'just', 'know', 'take', 'into', 'year', 'your', 'good', 'some'
}

_SPLIT = re.compile(r'\W+')


def extract_terms(text: str) -> Set[str]:
    """Extract the meaningful terms of a text."""
    if not text:
        return set()
    return {
        term for term in _SPLIT.split(text.lower())
        if len(term) >= MIN_TERM_LENGTH and term not in STOP_WORDS
    }


def jaccard(terms_a: Set[str], terms_b: Set[str]) -> float:
    if not terms_a or not terms_b:
        return 0.0
    return len(terms_a & terms_b) / len(terms_a | terms_b)


class KeywordMatchIndex:
    """
    In-memory keyword index keyed by context ID.

    Usage:
        index = KeywordMatchIndex()
        await index.add_summary(summary)
        matches = await index.find_similar_contexts("apples", limit=2)
    """

    def __init__(self):
        self._terms: Dict[str, Set[str]] = {}

    async def add_summary(self, summary: ContextSummary) -> None:
        """Add or replace the terms for a context."""
        self._terms[summary.context_id] = extract_terms(summary.summary)

    async def find_similar_contexts(self, text: str, limit: int = 5) -> List[SimilarContext]:
        """
        Rank indexed contexts by term overlap with `text`.

        Args:
            text: Query text
            limit: Maximum results

        Returns:
            Matches with similarity > 0, highest first. Ties keep insertion order.
        """
        if not text or not self._terms or limit <= 0:
            return []

        query_terms = extract_terms(text)
        matches = []
        for context_id, terms in self._terms.items():
            score = jaccard(query_terms, terms)
            if score > 0:
                matches.append(SimilarContext(context_id=context_id, similarity=score))

        # sort() is stable, so equal scores stay in insertion order
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    async def delete_context(self, context_id: str) -> bool:
        return self._terms.pop(context_id, None) is not None

    async def has_context(self, context_id: str) -> bool:
        return context_id in self._terms

    def get_size(self) -> int:
        return len(self._terms)
