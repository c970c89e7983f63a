"""
Knowledge retrieval with an explicit fallback chain.

Strategies are tried in order; the first one that completes wins:
1. VectorStrategy: embed the query, lazily embed items that lack a valid
   vector, cosine-score, keep score > threshold, top K
2. KeywordStrategy: lexical scoring over the whole knowledge base, keep
   score > 0, top K

A strategy signals "cannot run" by raising (no credential, provider error,
network failure); an empty result is a valid answer and ends the chain.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, MutableSequence, Optional, Sequence

from loguru import logger

from support_rag import metrics
from support_rag.cache import EmbeddingCache
from support_rag.config import ProviderConfig, RetrievalSettings
from support_rag.embeddings import EmbeddingClient
from support_rag.errors import CredentialMissingError, DimensionMismatchError, SupportRAGError
from support_rag.logging_config import log_retrieval
from support_rag.models import KnowledgeItem, ScoredItem
from support_rag.scoring import KeywordScorer, get_scorer
from support_rag.similarity import cosine_similarity


@dataclass
class RetrievalResult:
    """Ranked items plus which strategy produced them."""
    strategy: str
    scored: List[ScoredItem] = field(default_factory=list)
    fallback_error: Optional[BaseException] = None  # why an earlier strategy was skipped

    @property
    def items(self) -> List[KnowledgeItem]:
        return [s.item for s in self.scored]


class BaseRetrievalStrategy(ABC):
    """One step of the fallback chain."""

    name: str = "base"

    @abstractmethod
    async def run(
        self,
        query: str,
        knowledge_base: MutableSequence[KnowledgeItem],
        config: ProviderConfig,
        threshold: float,
        top_k: int,
    ) -> List[ScoredItem]:
        """Return ranked items, or raise if this strategy cannot run."""


class VectorStrategy(BaseRetrievalStrategy):
    """Cosine similarity against provider embeddings."""

    name = "vector"

    def __init__(self, embedder: EmbeddingClient, lazy_vectorize: bool = True):
        self.embedder = embedder
        self.lazy_vectorize = lazy_vectorize

    async def run(self, query, knowledge_base, config, threshold, top_k):
        if not config.has_credential:
            raise CredentialMissingError()

        query_vec = await self.embedder.embed(query, config)
        if len(query_vec) != config.embedding_dim:
            # every item would score 0; let the keyword strategy answer instead
            raise DimensionMismatchError(
                "Query embedding has unexpected length",
                expected=config.embedding_dim, actual=len(query_vec),
            )
        if self.lazy_vectorize:
            await self._vectorize_missing(knowledge_base, config)

        dim = config.embedding_dim
        scored = []
        for item in knowledge_base:
            # Wrong-length or missing vectors never reach the vector ranking
            score = cosine_similarity(query_vec, item.embedding) if item.has_valid_embedding(dim) else 0.0
            if score > threshold:
                scored.append(ScoredItem(item=item, score=score))

        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:top_k]

    async def _vectorize_missing(self, knowledge_base: MutableSequence[KnowledgeItem], config: ProviderConfig) -> None:
        """Embed every item without a valid vector and write it back into the list."""
        dim = config.embedding_dim
        model = config.embedding_model
        cache = self.embedder.cache

        pending: List[int] = []
        for idx, item in enumerate(knowledge_base):
            if item.has_valid_embedding(dim) or not _embedding_text(item):
                continue
            cached = cache.get(EmbeddingCache.item_key(item.id, item.version, model, dim), cache_type="item")
            if cached is not None:
                knowledge_base[idx] = item.model_copy(update={"embedding": list(cached)})
            else:
                pending.append(idx)

        if not pending:
            return

        snapshot = [knowledge_base[i] for i in pending]
        vectors = await self.embedder.embed([_embedding_text(item) for item in snapshot], config)
        for idx, item, vector in zip(pending, snapshot, vectors):
            if len(vector) != dim:
                continue
            cache.set(EmbeddingCache.item_key(item.id, item.version, model, dim), vector)
            # Whole-slot replacement: concurrent writers can only overwrite, never corrupt
            knowledge_base[idx] = item.with_embedding(vector)
        logger.debug(f"Vectorized {len(pending)} knowledge items on demand")


def _embedding_text(item: KnowledgeItem) -> str:
    return (item.content or item.title).strip()


class KeywordStrategy(BaseRetrievalStrategy):
    """Lexical fallback; always runs."""

    name = "keyword"

    def __init__(self, scorer: Optional[KeywordScorer] = None):
        self.scorer = scorer or get_scorer()

    async def run(self, query, knowledge_base, config, threshold, top_k):
        # threshold is a cosine cutoff and does not apply to keyword scores
        return self.scorer.rank(query, knowledge_base, top_k=top_k)


class KnowledgeRetriever:
    """Vector-first retrieval with keyword fallback over a knowledge-base snapshot."""

    def __init__(
        self,
        embedder: Optional[EmbeddingClient] = None,
        settings: Optional[RetrievalSettings] = None,
        strategies: Optional[Sequence[BaseRetrievalStrategy]] = None,
    ):
        self.settings = settings or RetrievalSettings()
        self.embedder = embedder or EmbeddingClient()
        if strategies is None:
            strategies = [
                VectorStrategy(self.embedder, lazy_vectorize=self.settings.lazy_vectorize),
                KeywordStrategy(),
            ]
        self.strategies: List[BaseRetrievalStrategy] = list(strategies)

    async def retrieve(
        self,
        query: str,
        knowledge_base: MutableSequence[KnowledgeItem],
        config: ProviderConfig,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[KnowledgeItem]:
        """Most relevant items first, at most top_k."""
        result = await self.retrieve_scored(query, knowledge_base, config, threshold=threshold, top_k=top_k)
        return result.items

    async def retrieve_scored(
        self,
        query: str,
        knowledge_base: MutableSequence[KnowledgeItem],
        config: ProviderConfig,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> RetrievalResult:
        threshold = self.settings.similarity_threshold if threshold is None else threshold
        last_error: Optional[BaseException] = None

        for strategy in self.strategies:
            k = top_k if top_k is not None else (
                self.settings.keyword_top_k if strategy.name == KeywordStrategy.name else self.settings.top_k
            )
            start = time.time()
            try:
                scored = await strategy.run(query, knowledge_base, config, threshold, k)
            except (SupportRAGError, ValueError) as e:
                last_error = e
                logger.info(f"Retrieval strategy '{strategy.name}' unavailable ({type(e).__name__}); falling back")
                continue

            elapsed = time.time() - start
            metrics.track_retrieval(strategy.name, elapsed)
            log_retrieval(query, strategy.name, int(elapsed * 1000), len(scored), candidates=len(knowledge_base))
            return RetrievalResult(strategy=strategy.name, scored=scored, fallback_error=last_error)

        if last_error is not None:
            raise last_error
        return RetrievalResult(strategy="none")
