"""LRU caches for embedding vectors and pairwise similarity scores.

Two caches back the similarity measurer:
- Embedding cache: vectors returned by the embedding backend, keyed by
  (model, text hash). Embeddings are immutable so entries never expire.
- Score cache: final pairwise scores keyed by (model, unordered text pair).
"""

import hashlib
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class LRUCache:
    """Least-recently-used cache with hit/miss accounting."""

    def __init__(self, maxsize: int):
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")

        self.maxsize = maxsize
        self._cache: OrderedDict = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value and mark it recently used, or None."""
        if key not in self._cache:
            self._misses += 1
            return None

        self._cache.move_to_end(key)
        self._hits += 1
        return self._cache[key]

    def put(self, key: str, value: Any) -> None:
        """Insert or refresh a value, evicting the oldest entry when full."""
        if key in self._cache:
            self._cache.move_to_end(key)
            self._cache[key] = value
            return

        self._cache[key] = value
        if len(self._cache) > self.maxsize:
            oldest_key = next(iter(self._cache))
            del self._cache[oldest_key]
            self._evictions += 1

    def clear(self) -> None:
        count = len(self._cache)
        self._cache.clear()
        logger.debug(f"Cleared cache ({count} items removed)")

    def size(self) -> int:
        return len(self._cache)

    def get_stats(self) -> Dict[str, int | float]:
        """Get cache statistics.

        Returns:
            Dict with hits, misses, evictions, size, hit_rate
        """
        total_requests = self._hits + self._misses
        hit_rate = self._hits / total_requests if total_requests > 0 else 0.0

        return {
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "size": len(self._cache),
            "hit_rate": hit_rate,
        }


def hash_text(text: str) -> str:
    """SHA256 hex digest of a text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class SimilarityCache:
    """Embedding and score caches sharing one key scheme."""

    def __init__(self, score_cache_size: int = 500, embedding_cache_size: int = 500):
        self.score_cache = LRUCache(maxsize=score_cache_size)
        self.embedding_cache = LRUCache(maxsize=embedding_cache_size)

    @staticmethod
    def _score_key(model: str, text1: str, text2: str) -> str:
        # Unordered pair so the score is shared by (a, b) and (b, a)
        h1, h2 = sorted((hash_text(text1), hash_text(text2)))
        return f"score:{model}:{h1}:{h2}"

    @staticmethod
    def _embedding_key(model: str, text: str) -> str:
        return f"embed:{model}:{hash_text(text)}"

    def get_score(self, model: str, text1: str, text2: str) -> Optional[float]:
        return self.score_cache.get(self._score_key(model, text1, text2))

    def put_score(self, model: str, text1: str, text2: str, score: float) -> None:
        self.score_cache.put(self._score_key(model, text1, text2), score)

    def get_embedding(self, model: str, text: str) -> Optional[List[float]]:
        return self.embedding_cache.get(self._embedding_key(model, text))

    def put_embedding(self, model: str, text: str, embedding: List[float]) -> None:
        self.embedding_cache.put(self._embedding_key(model, text), embedding)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "scores": self.score_cache.get_stats(),
            "embeddings": self.embedding_cache.get_stats(),
        }
