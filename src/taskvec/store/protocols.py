"""Store layer protocols — narrow capability interfaces for storage and indexing."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from taskvec.models.records import EmbeddingRecordBase, EmbeddingStatus
    from taskvec.types import SearchHit


@runtime_checkable
class VectorStore(Protocol):
    """Async protocol for durable embedding-record storage and ranked search.

    Status transitions are single atomic writes: no reader ever observes a
    ``completed`` record without its vector or a ``failed`` record without
    its error message.
    """

    async def connect(self) -> None:
        """Create tables if needed and warm any in-memory index."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...

    async def upsert(self, record: EmbeddingRecordBase) -> bool:
        """Insert *record* unless its ``record_id`` exists.  Return True if inserted."""
        ...

    async def upsert_many(self, records: list[EmbeddingRecordBase]) -> list[EmbeddingRecordBase]:
        """Insert-or-no-op each record and return the stored rows in input order."""
        ...

    async def get(self, record_id: str) -> EmbeddingRecordBase | None:
        """Return the record with *record_id*, or None."""
        ...

    async def get_by_parent(self, parent_id: str) -> list[EmbeddingRecordBase]:
        """Return all records for *parent_id* in insertion order."""
        ...

    async def delete_by_parent(self, parent_id: str) -> int:
        """Atomically delete every record for *parent_id*.  Return the count."""
        ...

    async def mark_completed(
        self, record_id: str, vector: list[float], *, model_name: str = ""
    ) -> bool:
        """Transition ``pending → completed`` attaching *vector*."""
        ...

    async def mark_failed(self, record_id: str, error_message: str) -> bool:
        """Transition ``pending → failed`` attaching *error_message*."""
        ...

    async def reset_to_pending(self, record_id: str) -> EmbeddingRecordBase:
        """Transition ``failed → pending``, clearing vector and error."""
        ...

    async def search(
        self,
        query_vector: list[float],
        *,
        threshold: float,
        limit: int,
    ) -> list[SearchHit]:
        """Return ranked ``completed`` records with similarity above *threshold*."""
        ...

    async def count(self, status: EmbeddingStatus | None = None) -> int:
        """Count records, optionally restricted to one status."""
        ...


@runtime_checkable
class AnnIndex(Protocol):
    """In-memory approximate-nearest-neighbour index over completed vectors.

    Keys are ``record_id`` strings; scores are cosine similarities
    (higher is more similar).
    """

    def add(self, key: str, vector: list[float]) -> None:
        """Insert or replace the vector for *key*."""
        ...

    def remove(self, key: str) -> bool:
        """Remove *key*.  Return True if it was present."""
        ...

    def search(self, vector: list[float], k: int) -> list[tuple[str, float]]:
        """Return up to *k* ``(key, score)`` pairs, best first."""
        ...

    def clear(self) -> None:
        """Drop every entry."""
        ...

    def __len__(self) -> int:
        ...


@runtime_checkable
class TrainableIndex(Protocol):
    """An :class:`AnnIndex` whose partitioning is trained out of band.

    ``train`` may block for a long time and is run in a worker thread.
    """

    @property
    def needs_training(self) -> bool:
        ...

    def train(self) -> None:
        ...
