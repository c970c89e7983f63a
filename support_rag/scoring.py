#!/usr/bin/env python3
"""
Keyword relevance scoring for knowledge items.

Lexical fallback ranker used when embeddings are unavailable. Weights are
fixed class constants and cannot be changed per call.
"""

from typing import Iterable, List, Optional

from loguru import logger

from support_rag import config as CFG
from support_rag.models import KnowledgeItem, ScoredItem


class KeywordScorer:
    """Score items by substring matches on title, content, tags and query tokens."""

    TITLE_WEIGHT = 3.0
    CONTENT_WEIGHT = 2.0
    TAG_WEIGHT = 1.5
    TOKEN_WEIGHT = 0.5
    MIN_TOKEN_LENGTH = 2

    @classmethod
    def tokens(cls, query: str) -> List[str]:
        return [t for t in query.lower().split() if len(t) >= cls.MIN_TOKEN_LENGTH]

    def score(self, query: str, item: KnowledgeItem) -> float:
        """
        Score one item against a query.

        Args:
            query: Raw user query
            item: Knowledge item to score

        Returns:
            Non-negative relevance score; 0 means no lexical overlap.
        """
        q = query.lower().strip()
        if not q:
            return 0.0

        title = item.title.lower()
        content = item.content.lower()
        score = 0.0

        if q in title:
            score += self.TITLE_WEIGHT
        if q in content:
            score += self.CONTENT_WEIGHT
        if any(q in tag.lower() for tag in item.tags):
            score += self.TAG_WEIGHT

        haystack = f"{title} {content}"
        for token in self.tokens(q):
            if token in haystack:
                score += self.TOKEN_WEIGHT

        return score

    def rank(
        self,
        query: str,
        items: Iterable[KnowledgeItem],
        top_k: Optional[int] = None,
    ) -> List[ScoredItem]:
        """Score every item, drop zeros, sort descending, keep top_k.

        sorted() is stable, so ties keep knowledge-base order.
        """
        top_k = CFG.KEYWORD_TOP_K if top_k is None else top_k
        scored = [ScoredItem(item=item, score=self.score(query, item)) for item in items]
        hits = [s for s in scored if s.score > 0]
        hits = sorted(hits, key=lambda s: s.score, reverse=True)[:top_k]
        logger.debug(f"Keyword scoring: {len(hits)}/{len(scored)} items matched '{query[:50]}'")
        return hits


_scorer: Optional[KeywordScorer] = None


def get_scorer() -> KeywordScorer:
    """Get or create the shared keyword scorer."""
    global _scorer
    if _scorer is None:
        _scorer = KeywordScorer()
    return _scorer
