"""IVFFlatIndex — inverted-file ANN index over unit vectors, in numpy.

Vectors are L2-normalised on insert so the inner product is the cosine
similarity.  Until ``min_train_size`` vectors are present the index scans
every vector exactly.  Past that point it partitions the corpus with
spherical k-means into ``round(sqrt(n))`` lists and probes only the lists
whose centroids are closest to the query.  The partitioning is rebuilt each
time the corpus grows by ``growth_factor`` since the last training.

Training is never triggered by ``add``.  The owner polls
``needs_training`` and runs :meth:`IVFFlatIndex.train` off the event loop;
k-means runs on a snapshot without holding the lock, so concurrent adds,
removes and searches proceed while it runs and are folded into the new
partitioning when it is swapped in.
"""

from __future__ import annotations

import logging
import math
import threading

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MIN_TRAIN_SIZE: int = 1024
DEFAULT_GROWTH_FACTOR: int = 10


def _normalize(vector: list[float] | np.ndarray) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not math.isfinite(norm):
        msg = "Cannot index a zero or non-finite vector"
        raise ValueError(msg)
    return arr / norm


class IVFFlatIndex:
    """In-process IVF-Flat index implementing the ``AnnIndex`` protocol.

    Thread-safe via :class:`threading.Lock`.
    """

    def __init__(
        self,
        *,
        dimension: int,
        min_train_size: int = DEFAULT_MIN_TRAIN_SIZE,
        n_probe: int | None = None,
        growth_factor: int = DEFAULT_GROWTH_FACTOR,
        kmeans_iterations: int = 10,
        seed: int = 0,
    ) -> None:
        if min_train_size < 1:
            msg = "min_train_size must be >= 1"
            raise ValueError(msg)
        self._dimension = dimension
        self._min_train_size = min_train_size
        self._n_probe = n_probe
        self._growth_factor = growth_factor
        self._kmeans_iterations = kmeans_iterations
        self._seed = seed

        self._lock = threading.Lock()
        self._train_lock = threading.Lock()
        self._vectors: dict[str, np.ndarray] = {}
        # Populated once trained
        self._centroids: np.ndarray | None = None
        self._lists: list[set[str]] = []
        self._assignment: dict[str, int] = {}
        self._trained_size = 0

    # ------------------------------------------------------------------
    # AnnIndex protocol
    # ------------------------------------------------------------------

    def add(self, key: str, vector: list[float]) -> None:
        """Insert or replace the vector for *key*."""
        unit = _normalize(vector)
        if unit.shape != (self._dimension,):
            msg = f"Expected vector of length {self._dimension}, got {unit.shape[0]}"
            raise ValueError(msg)

        with self._lock:
            if key in self._vectors:
                self._unassign(key)
            self._vectors[key] = unit
            if self._centroids is not None:
                self._assign(key, unit)

    def remove(self, key: str) -> bool:
        """Remove *key*.  Return True if it was present."""
        with self._lock:
            if self._vectors.pop(key, None) is None:
                return False
            self._unassign(key)
            return True

    def search(self, vector: list[float], k: int) -> list[tuple[str, float]]:
        """Return up to *k* ``(key, cosine)`` pairs, best first."""
        if k <= 0:
            return []
        query = _normalize(vector)

        with self._lock:
            if not self._vectors:
                return []
            keys = self._candidate_keys(query)
            if not keys:
                return []
            matrix = np.stack([self._vectors[key] for key in keys])

        scores = matrix @ query
        if len(keys) > k:
            top = np.argpartition(-scores, k - 1)[:k]
        else:
            top = np.arange(len(keys))
        ranked = sorted(top.tolist(), key=lambda i: -float(scores[i]))
        return [(keys[i], float(scores[i])) for i in ranked]

    def clear(self) -> None:
        """Drop every entry and the trained partitioning."""
        with self._lock:
            self._vectors.clear()
            self._reset_partitions()

    def __len__(self) -> int:
        return len(self._vectors)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_trained(self) -> bool:
        return self._centroids is not None

    @property
    def n_lists(self) -> int:
        return len(self._lists)

    @property
    def n_probe(self) -> int:
        if self._n_probe is not None:
            return max(1, min(self._n_probe, max(self.n_lists, 1)))
        return max(1, math.ceil(math.sqrt(max(self.n_lists, 1))))

    @property
    def needs_training(self) -> bool:
        """Whether the corpus has reached or outgrown the current partitioning."""
        n = len(self._vectors)
        if n < self._min_train_size:
            return False
        return self._trained_size == 0 or n >= self._trained_size * self._growth_factor

    def train(self) -> None:
        """(Re)train the partitioning on a snapshot of the current corpus.

        Safe to call from a worker thread.  Only the snapshot and the final
        swap take the lock; entries added or removed while k-means runs are
        reconciled against the new centroids before the swap.
        """
        with self._train_lock:
            with self._lock:
                keys = list(self._vectors)
                if not keys:
                    self._reset_partitions()
                    return
                snapshot = [self._vectors[key] for key in keys]

            data = np.stack(snapshot)
            centroids = self._kmeans(data)
            assignment = np.argmax(data @ centroids.T, axis=1).tolist()

            with self._lock:
                if not self._vectors:
                    # Cleared while training
                    self._reset_partitions()
                    return
                lists: list[set[str]] = [set() for _ in range(len(centroids))]
                assigned: dict[str, int] = {}
                for key, vector, list_id in zip(keys, snapshot, assignment, strict=True):
                    # Replaced or removed since the snapshot
                    if self._vectors.get(key) is not vector:
                        continue
                    lists[list_id].add(key)
                    assigned[key] = list_id
                for key, vector in self._vectors.items():
                    if key not in assigned:
                        list_id = int(np.argmax(centroids @ vector))
                        lists[list_id].add(key)
                        assigned[key] = list_id
                self._centroids = centroids
                self._lists = lists
                self._assignment = assigned
                self._trained_size = len(keys)

        logger.info("IVF index trained (rows=%d, lists=%d)", len(keys), len(centroids))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _candidate_keys(self, query: np.ndarray) -> list[str]:
        if self._centroids is None:
            return list(self._vectors)
        centroid_scores = self._centroids @ query
        n_probe = self.n_probe
        if n_probe >= len(self._lists):
            probe = range(len(self._lists))
        else:
            probe = np.argpartition(-centroid_scores, n_probe - 1)[:n_probe].tolist()
        keys: list[str] = []
        for list_id in probe:
            keys.extend(self._lists[list_id])
        return keys

    def _kmeans(self, data: np.ndarray) -> np.ndarray:
        """Spherical k-means with ``round(sqrt(n))`` centroids."""
        n = len(data)
        n_lists = max(1, round(math.sqrt(n)))
        rng = np.random.default_rng(self._seed)
        centroids = data[rng.choice(n, size=n_lists, replace=False)].copy()
        for _ in range(self._kmeans_iterations):
            assignment = np.argmax(data @ centroids.T, axis=1)
            for list_id in range(n_lists):
                members = data[assignment == list_id]
                if len(members) == 0:
                    continue
                mean = members.sum(axis=0)
                norm = float(np.linalg.norm(mean))
                if norm > 0.0:
                    centroids[list_id] = mean / norm
        return centroids

    def _assign(self, key: str, unit: np.ndarray) -> None:
        assert self._centroids is not None
        list_id = int(np.argmax(self._centroids @ unit))
        self._lists[list_id].add(key)
        self._assignment[key] = list_id

    def _unassign(self, key: str) -> None:
        list_id = self._assignment.pop(key, None)
        if list_id is not None:
            self._lists[list_id].discard(key)

    def _reset_partitions(self) -> None:
        self._centroids = None
        self._lists = []
        self._assignment = {}
        self._trained_size = 0
