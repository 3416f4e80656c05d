"""QueryEmbeddingCache — short-lived cache of query vectors."""

from __future__ import annotations

import hashlib
import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL: float = 300.0
DEFAULT_MAX_ENTRIES: int = 1024


class QueryEmbeddingCache:
    """TTL + LRU cache mapping query text to its embedding.

    Repeated searches for the same text skip the provider call while the
    entry is fresh.  Only successful embeddings are stored.
    """

    def __init__(
        self,
        *,
        ttl: float = DEFAULT_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, list[float]]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(text: str) -> str:
        return hashlib.sha256(text.encode()).hexdigest()

    def get(self, text: str) -> list[float] | None:
        """Return the cached vector for *text*, or None if absent or expired."""
        key = self.key(text)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, vector = entry
        if expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        logger.debug("Query embedding cache hit")
        return vector

    def set(self, text: str, vector: list[float]) -> None:
        """Store *vector* for *text*, evicting the least recently used entry if full."""
        if self._ttl <= 0 or self._max_entries <= 0:
            return
        key = self.key(text)
        self._entries[key] = (self._clock() + self._ttl, vector)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
