"""HNSWIndex — usearch HNSW graph index for large corpora."""

from __future__ import annotations

import threading

import numpy as np
from usearch.index import Index


class HNSWIndex:
    """In-process HNSW index backed by usearch, implementing ``AnnIndex``.

    Used once the completed corpus outgrows the IVF index.  usearch keys
    are integers, so ``record_id`` strings are mapped to monotonically
    increasing keys.

    Thread-safe via :class:`threading.Lock`.
    """

    def __init__(self, *, dimension: int) -> None:
        self._dimension = dimension
        self._index = Index(ndim=dimension, metric="cos", dtype="f32")
        self._lock = threading.Lock()
        self._next_key: int = 0
        self._id_to_key: dict[str, int] = {}
        self._key_to_id: dict[int, str] = {}

    def add(self, key: str, vector: list[float]) -> None:
        """Insert or replace the vector for *key*."""
        arr = np.asarray(vector, dtype=np.float32)
        if arr.shape != (self._dimension,):
            msg = f"Expected vector of length {self._dimension}, got {arr.shape[0]}"
            raise ValueError(msg)
        with self._lock:
            old = self._id_to_key.pop(key, None)
            if old is not None:
                self._key_to_id.pop(old, None)
                self._index.remove(old)
            usearch_key = self._next_key
            self._next_key += 1
            self._index.add(usearch_key, arr)
            self._id_to_key[key] = usearch_key
            self._key_to_id[usearch_key] = key

    def remove(self, key: str) -> bool:
        """Remove *key*.  Return True if it was present."""
        with self._lock:
            usearch_key = self._id_to_key.pop(key, None)
            if usearch_key is None:
                return False
            self._key_to_id.pop(usearch_key, None)
            self._index.remove(usearch_key)
            return True

    def search(self, vector: list[float], k: int) -> list[tuple[str, float]]:
        """Return up to *k* ``(key, cosine)`` pairs, best first."""
        if k <= 0 or not self._id_to_key:
            return []
        query = np.asarray(vector, dtype=np.float32)
        with self._lock:
            matches = self._index.search(query, min(k, len(self._id_to_key)))
            hits: list[tuple[str, float]] = []
            for match_key, distance in zip(
                matches.keys.tolist(), matches.distances.tolist(), strict=True
            ):
                record_id = self._key_to_id.get(int(match_key))
                if record_id is not None:
                    hits.append((record_id, 1.0 - float(distance)))
        hits.sort(key=lambda h: h[1], reverse=True)
        return hits

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._index = Index(ndim=self._dimension, metric="cos", dtype="f32")
            self._id_to_key.clear()
            self._key_to_id.clear()

    def __len__(self) -> int:
        return len(self._id_to_key)
