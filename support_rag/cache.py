"""
Embedding cache for query and knowledge-item vectors.

LRU eviction with per-entry TTL. Keys:
- text vectors: (model, dimension, sha256(text))
- item vectors: (model, dimension, item.id, item.version), so re-vectorizing
  an item (which bumps its version) invalidates the old entry
Thread-safe with lock-based synchronization.
"""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from support_rag import config as CFG
from support_rag import metrics

Key = Tuple[Any, ...]


class _Entry:
    __slots__ = ("vector", "created_at", "ttl")

    def __init__(self, vector: List[float], ttl: float):
        self.vector = vector
        self.created_at = time.time()
        self.ttl = ttl

    def is_expired(self) -> bool:
        return (time.time() - self.created_at) > self.ttl


class EmbeddingCache:
    """LRU + TTL store for embedding vectors."""

    def __init__(self, max_size: int = CFG.EMBEDDING_CACHE_SIZE, ttl: float = CFG.EMBEDDING_CACHE_TTL):
        self.max_size = max_size
        self.ttl = ttl
        self._entries: "OrderedDict[Key, _Entry]" = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @staticmethod
    def text_key(text: str, model: str, dim: int) -> Key:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return ("text", model, dim, digest)

    @staticmethod
    def item_key(item_id: str, version: int, model: str, dim: int) -> Key:
        return ("item", model, dim, item_id, version)

    def get(self, key: Key, cache_type: str = "text") -> Optional[List[float]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired():
                if entry is not None:
                    del self._entries[key]
                self.misses += 1
                metrics.track_cache(cache_type, hit=False)
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            metrics.track_cache(cache_type, hit=True)
            return entry.vector

    def set(self, key: Key, vector: List[float]) -> None:
        with self._lock:
            self._entries[key] = _Entry(list(vector), self.ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            logger.info("Embedding cache cleared")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate_pct": round(self.hits / total * 100, 2) if total else 0.0,
                "size": len(self._entries),
                "capacity": self.max_size,
                "evictions": self.evictions,
            }

    def __len__(self) -> int:
        return len(self._entries)


# Global singleton instance
_cache_instance: Optional[EmbeddingCache] = None


def get_embedding_cache() -> EmbeddingCache:
    """Get or create the shared embedding cache."""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = EmbeddingCache()
        logger.info(
            f"Embedding cache initialized: max_size={_cache_instance.max_size}, ttl={_cache_instance.ttl}s"
        )
    return _cache_instance


def reset_embedding_cache() -> None:
    """Drop the shared cache (tests)."""
    global _cache_instance
    _cache_instance = None
