"""
Embedding client.

Turns text into fixed-length vectors through the configured provider:
- str in, one vector out; list in, one vector per input in the same order
- no local truncation, the provider enforces its own input limits
- no retries; CredentialMissingError / ProviderError / ProviderNetworkError propagate
- vectors are cached by (model, dimension, sha256(text))
"""

from __future__ import annotations

import time
from typing import List, Optional, Sequence, Union, overload

from loguru import logger

from support_rag.cache import EmbeddingCache, get_embedding_cache
from support_rag.config import ProviderConfig
from support_rag.errors import CredentialMissingError, DimensionMismatchError
from support_rag.logging_config import log_embedding
from support_rag.providers.base import AIProvider
from support_rag.providers.registry import get_provider

Vector = List[float]


class EmbeddingClient:
    """Async embedding wrapper around an AIProvider."""

    def __init__(self, provider: Optional[AIProvider] = None, cache: Optional[EmbeddingCache] = None):
        self._provider = provider
        self._cache = cache

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache if self._cache is not None else get_embedding_cache()

    def provider_for(self, config: ProviderConfig) -> AIProvider:
        return self._provider if self._provider is not None else get_provider(config)

    @overload
    async def embed(self, text: str, config: ProviderConfig) -> Vector: ...

    @overload
    async def embed(self, text: Sequence[str], config: ProviderConfig) -> List[Vector]: ...

    async def embed(self, text: Union[str, Sequence[str]], config: ProviderConfig) -> Union[Vector, List[Vector]]:
        """
        Embed one string or a batch.

        Args:
            text: Non-empty string, or list of non-empty strings
            config: Provider context (credential, model, dimension, timeout)

        Returns:
            A vector for a string input, a list of vectors for a list input

        Raises:
            CredentialMissingError: No usable API key in config
            ProviderError: Non-2xx response from the provider
            ProviderNetworkError: Connection failure or timeout
            ValueError: Empty input
        """
        single = isinstance(text, str)
        texts = [text] if single else list(text)
        if not texts or any(not t or not t.strip() for t in texts):
            raise ValueError("embed() requires non-empty text")
        if not config.has_credential:
            raise CredentialMissingError()

        vectors = await self._embed_many(texts, config)
        return vectors[0] if single else vectors

    async def _embed_many(self, texts: List[str], config: ProviderConfig) -> List[Vector]:
        cache = self.cache
        keys = [EmbeddingCache.text_key(t, config.embedding_model, config.embedding_dim) for t in texts]
        results: List[Optional[Vector]] = [cache.get(k) for k in keys]

        missing = [i for i, v in enumerate(results) if v is None]
        if not missing:
            log_embedding(len(texts), 0, config.embedding_model, cache_hit=True)
            return [v for v in results if v is not None]

        start = time.time()
        fresh = await self.provider_for(config).embed([texts[i] for i in missing], config)
        latency_ms = int((time.time() - start) * 1000)

        for i, vector in zip(missing, fresh):
            if len(vector) != config.embedding_dim:
                # Not cached; similarity scores mismatched lengths as 0
                err = DimensionMismatchError(
                    "Provider returned unexpected embedding length",
                    expected=config.embedding_dim, actual=len(vector),
                )
                logger.warning(f"{err.message}: expected={err.expected} actual={err.actual}")
            else:
                cache.set(keys[i], vector)
            results[i] = vector

        log_embedding(len(missing), latency_ms, config.embedding_model)
        return [v if v is not None else [] for v in results]
