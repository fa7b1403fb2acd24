# services/embedding_cache.py
import os
import hashlib
import threading
from typing import Dict, List, Optional

from cachetools import TTLCache

EMBEDDING_CACHE_SIZE = int(os.getenv("EMBEDDING_CACHE_SIZE", "1000"))
EMBEDDING_CACHE_TTL_SECONDS = int(os.getenv("EMBEDDING_CACHE_TTL_SECONDS", "3600"))


class EmbeddingCache:
    """
    Per-process memo of text -> vector, keyed on the exact input text and the
    model. TTLCache evicts least-recently-used entries once full.
    """

    def __init__(self, maxsize: int = EMBEDDING_CACHE_SIZE, ttl: int = EMBEDDING_CACHE_TTL_SECONDS):
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(text: str, model: str) -> str:
        return hashlib.sha256(f"{model}\x00{text}".encode("utf-8")).hexdigest()

    def get(self, text: str, model: str) -> Optional[List[float]]:
        with self._lock:
            vector = self._cache.get(self._key(text, model))
            if vector is None:
                self.misses += 1
            else:
                self.hits += 1
            return vector

    def set(self, text: str, model: str, vector: List[float]):
        with self._lock:
            self._cache[self._key(text, model)] = vector

    def clear(self):
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> Dict:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._cache),
                "maxSize": self._cache.maxsize,
                "hits": self.hits,
                "misses": self.misses,
                "hitRate": round(self.hits / lookups, 3) if lookups else 0.0,
            }


embedding_cache = EmbeddingCache()
