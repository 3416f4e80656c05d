"""DatabaseVectorStore — durable SQL storage with an in-memory ANN index."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

import numpy as np
from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from taskvec.exceptions import (
    InvalidTransitionError,
    RecordNotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from taskvec.models.records import EmbeddingRecord, EmbeddingStatus, utcnow
from taskvec.status import check_transition
from taskvec.store.dialect import get_dialect, insert_ignore
from taskvec.store.hnsw import HNSWIndex
from taskvec.store.ivf import IVFFlatIndex
from taskvec.store.protocols import TrainableIndex
from taskvec.types import DEFAULT_DIMENSION, SearchHit

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncEngine

    from taskvec.models.records import EmbeddingRecordBase
    from taskvec.store.protocols import AnnIndex

logger = logging.getLogger(__name__)

HNSW_THRESHOLD: int = 100_000
"""Completed-row count above which ``connect()`` picks an HNSW index."""

_WARM_PAGE_SIZE = 1000
# Rows committed out of updated_at order by concurrent writers land inside this window.
_REFRESH_OVERLAP = timedelta(seconds=5)
# Slack for float32 index scores before the exact float64 threshold check.
_PREFILTER_SLACK = 1e-4


def _cosine(query: np.ndarray, vector: list[float]) -> float:
    arr = np.asarray(vector, dtype=np.float64)
    denom = float(np.linalg.norm(arr)) * float(np.linalg.norm(query))
    if denom == 0.0:
        return 0.0
    return float(np.dot(arr, query) / denom)


class DatabaseVectorStore:
    """SQL-backed ``VectorStore`` — works with SQLite and PostgreSQL.

    Rows are the source of truth.  An in-memory :class:`AnnIndex` over the
    ``completed`` vectors narrows the candidate set for a search; every
    candidate is then re-read from the table, so a search never returns a
    row that is not ``completed`` at read time and never returns part of a
    parent that is being deleted.

    Other writers on the same table (a second worker process, say) are
    picked up before a search by a catch-up scan over ``updated_at``, at
    most once per *refresh_interval* seconds (``0`` checks on every
    search).

    Each operation runs in its own short transaction.  There is no
    store-wide lock: status transitions are single conditional ``UPDATE``
    statements, and the index guards its own structures.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        dimension: int = DEFAULT_DIMENSION,
        index: AnnIndex | None = None,
        record_model: type[EmbeddingRecordBase] | None = None,
        overfetch: int = 2,
        refresh_interval: float = 0.0,
    ) -> None:
        self._engine = engine
        self._dialect = get_dialect(engine)
        self._dimension = dimension
        self._model: type[EmbeddingRecordBase] = record_model or EmbeddingRecord  # type: ignore[assignment]
        self._index_injected = index is not None
        self._index: AnnIndex = index if index is not None else IVFFlatIndex(dimension=dimension)
        self._overfetch = max(1, overfetch)
        self._refresh_interval = refresh_interval
        self._last_refresh: float | None = None
        self._high_water: datetime | None = None
        self._seen: dict[str, datetime] = {}
        self._train_task: asyncio.Task[None] | None = None
        self._session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def dialect(self) -> str:
        return self._dialect

    @property
    def index(self) -> AnnIndex:
        return self._index

    @property
    def record_model(self) -> type[EmbeddingRecordBase]:
        return self._model

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Create the table if needed and warm the index from completed rows."""
        model = self._model
        try:
            if self._dialect == "sqlite" and self._engine.url.database not in (None, "", ":memory:"):
                async with self._engine.connect() as conn:
                    await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            async with self._engine.begin() as conn:
                await conn.run_sync(
                    lambda c: model.__table__.create(c, checkfirst=True)  # type: ignore[attr-defined]
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"Failed to initialise store: {exc}") from exc

        completed = await self.count(EmbeddingStatus.COMPLETED)
        if not self._index_injected and completed > HNSW_THRESHOLD:
            logger.info("Using HNSW index for %d completed rows", completed)
            self._index = HNSWIndex(dimension=self._dimension)
        await self.rebuild_index()

    async def close(self) -> None:
        """Drop the in-memory index.  The engine is owned by the caller."""
        await self.wait_for_index_training()
        self._index.clear()
        self._seen.clear()
        self._high_water = None
        self._last_refresh = None

    async def rebuild_index(self) -> int:
        """Reload the index from every completed row.  Return the row count."""
        model = self._model
        self._index.clear()
        self._seen.clear()
        self._high_water = None
        loaded = 0
        last_id = 0
        while True:
            async with self._transaction() as session:
                result = await session.execute(
                    select(model.id, model.record_id, model.vector, model.updated_at)  # type: ignore[call-overload]
                    .where(
                        model.status == EmbeddingStatus.COMPLETED,  # type: ignore[arg-type]
                        model.id > last_id,  # type: ignore[operator]
                    )
                    .order_by(model.id)  # type: ignore[arg-type]
                    .limit(_WARM_PAGE_SIZE)
                )
                rows = result.all()
            if not rows:
                break
            for row_id, record_id, vector, updated_at in rows:
                last_id = row_id
                self._advance_high_water(updated_at)
                if not vector or len(vector) != self._dimension:
                    logger.warning("Skipping malformed vector for record %s", record_id)
                    continue
                self._index.add(record_id, vector)
                loaded += 1
        self._last_refresh = time.monotonic()
        self._schedule_training()
        logger.info("Index warmed with %d completed records", loaded)
        return loaded

    async def refresh_index(self) -> int:
        """Index rows completed by other writers since the last refresh.

        Return the number of vectors added.  Rows this store removed or
        that left ``completed`` elsewhere are dropped lazily by
        :meth:`search`.
        """
        model = self._model
        stmt = select(model.record_id, model.updated_at).where(  # type: ignore[call-overload]
            model.status == EmbeddingStatus.COMPLETED,  # type: ignore[arg-type]
        )
        if self._high_water is not None:
            stmt = stmt.where(model.updated_at >= self._high_water - _REFRESH_OVERLAP)  # type: ignore[operator]
        async with self._transaction() as session:
            result = await session.execute(stmt)
            fresh: dict[str, datetime] = {}
            for record_id, updated_at in result.all():
                self._advance_high_water(updated_at)
                if self._seen.get(record_id) != updated_at:
                    fresh[record_id] = updated_at
            vectors: list[tuple[str, list[float] | None]] = []
            if fresh:
                result = await session.execute(
                    select(model.record_id, model.vector).where(  # type: ignore[call-overload]
                        model.record_id.in_(list(fresh)),  # type: ignore[attr-defined]
                        model.status == EmbeddingStatus.COMPLETED,  # type: ignore[arg-type]
                    )
                )
                vectors = list(result.all())

        added = 0
        for record_id, vector in vectors:
            self._seen[record_id] = fresh[record_id]
            if not vector or len(vector) != self._dimension:
                continue
            self._index.add(record_id, vector)
            added += 1

        if self._high_water is not None:
            cutoff = self._high_water - _REFRESH_OVERLAP
            self._seen = {key: ts for key, ts in self._seen.items() if ts >= cutoff}
        self._last_refresh = time.monotonic()
        if added:
            logger.debug("Index refresh picked up %d completed records", added)
            self._schedule_training()
        return added

    async def wait_for_index_training(self) -> None:
        """Wait for a background index training run, if one is in flight."""
        task = self._train_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, record: EmbeddingRecordBase) -> bool:
        """Insert *record* unless its ``record_id`` already exists."""
        self._validate_new(record)
        async with self._transaction() as session:
            inserted = await insert_ignore(
                session, self._dialect, self._insert_values(record), ["record_id"], self._model
            )
        return inserted == 1

    async def upsert_many(self, records: list[EmbeddingRecordBase]) -> list[EmbeddingRecordBase]:
        """Insert-or-no-op every record in one transaction; return stored rows in input order."""
        if not records:
            return []
        for record in records:
            self._validate_new(record)

        model = self._model
        ids = [r.record_id for r in records]
        async with self._transaction() as session:
            for record in records:
                await insert_ignore(
                    session, self._dialect, self._insert_values(record), ["record_id"], model
                )
            result = await session.execute(
                select(model).where(model.record_id.in_(set(ids)))  # type: ignore[attr-defined]
            )
            stored = {row.record_id: row for row in result.scalars().all()}
        return [stored[record_id] for record_id in ids]

    async def mark_completed(
        self, record_id: str, vector: list[float], *, model_name: str = ""
    ) -> bool:
        """Transition ``pending → completed`` attaching *vector*.

        Returns False when the row no longer exists or is not pending
        (e.g. its parent was deleted while the job was in flight).
        """
        if len(vector) != self._dimension:
            msg = f"Vector length {len(vector)} does not match dimension {self._dimension}"
            raise ValidationError(msg)
        updated = await self._transition(
            record_id,
            EmbeddingStatus.COMPLETED,
            vector=list(vector),
            error_message=None,
            model_name=model_name,
        )
        if updated:
            self._index.add(record_id, vector)
            self._schedule_training()
        return updated

    async def mark_failed(self, record_id: str, error_message: str) -> bool:
        """Transition ``pending → failed`` attaching *error_message*."""
        if not error_message:
            raise ValidationError("A failed record requires an error message")
        return await self._transition(
            record_id,
            EmbeddingStatus.FAILED,
            vector=None,
            error_message=error_message,
        )

    async def reset_to_pending(self, record_id: str) -> EmbeddingRecordBase:
        """Transition ``failed → pending``, clearing vector and error."""
        model = self._model
        async with self._transaction() as session:
            record = await self._get(session, record_id)
            if record is None:
                raise RecordNotFoundError(f"No record with id {record_id}")
            check_transition(record.status, EmbeddingStatus.PENDING)
            result = await session.execute(
                update(model)
                .where(
                    model.record_id == record_id,  # type: ignore[arg-type]
                    model.status == EmbeddingStatus.FAILED,  # type: ignore[arg-type]
                )
                .values(
                    status=EmbeddingStatus.PENDING,
                    vector=None,
                    error_message=None,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount != 1:  # type: ignore[attr-defined]
                msg = f"Record {record_id} changed state during reprocess"
                raise InvalidTransitionError(msg)
            refreshed = await self._get(session, record_id, populate_existing=True)
        self._index.remove(record_id)
        assert refreshed is not None
        return refreshed

    async def delete_by_parent(self, parent_id: str) -> int:
        """Delete every record for *parent_id* in one transaction."""
        model = self._model
        async with self._transaction() as session:
            result = await session.execute(
                select(model.record_id).where(model.parent_id == parent_id)  # type: ignore[call-overload]
            )
            record_ids = list(result.scalars().all())
            await session.execute(
                delete(model).where(model.parent_id == parent_id)  # type: ignore[arg-type]
            )
        for record_id in record_ids:
            self._index.remove(record_id)
        logger.info("Deleted %d records for parent %s", len(record_ids), parent_id)
        return len(record_ids)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> EmbeddingRecordBase | None:
        """Return the record with *record_id*, or None."""
        async with self._transaction() as session:
            return await self._get(session, record_id)

    async def get_by_parent(self, parent_id: str) -> list[EmbeddingRecordBase]:
        """Return all records for *parent_id* in insertion order."""
        model = self._model
        async with self._transaction() as session:
            result = await session.execute(
                select(model)
                .where(model.parent_id == parent_id)  # type: ignore[arg-type]
                .order_by(model.id)  # type: ignore[arg-type]
            )
            return list(result.scalars().all())

    async def count(self, status: EmbeddingStatus | None = None) -> int:
        """Count records, optionally restricted to one status."""
        model = self._model
        stmt = select(func.count()).select_from(model)
        if status is not None:
            stmt = stmt.where(model.status == status)  # type: ignore[arg-type]
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def search(
        self,
        query_vector: list[float],
        *,
        threshold: float,
        limit: int,
    ) -> list[SearchHit]:
        """Return up to *limit* completed records with similarity above *threshold*.

        Ordered by similarity descending, ties broken by earliest
        ``created_at`` then insertion order.
        """
        if limit <= 0:
            return []
        if len(query_vector) != self._dimension:
            msg = f"Query vector length {len(query_vector)} does not match dimension {self._dimension}"
            raise ValidationError(msg)
        query = np.asarray(query_vector, dtype=np.float64)
        if float(np.linalg.norm(query)) == 0.0:
            return []

        if (
            self._last_refresh is None
            or time.monotonic() - self._last_refresh >= self._refresh_interval
        ):
            await self.refresh_index()

        candidates = self._index.search(query_vector, limit * self._overfetch)
        candidate_ids = [key for key, score in candidates if score > threshold - _PREFILTER_SLACK]
        if not candidate_ids:
            return []

        model = self._model
        async with self._transaction() as session:
            result = await session.execute(
                select(model).where(
                    model.record_id.in_(candidate_ids),  # type: ignore[attr-defined]
                    model.status == EmbeddingStatus.COMPLETED,  # type: ignore[arg-type]
                )
            )
            rows = list(result.scalars().all())

        # Deleted or reset since they were indexed
        stale = set(candidate_ids).difference(row.record_id for row in rows)
        for record_id in stale:
            self._index.remove(record_id)
        if stale:
            logger.debug("Dropped %d stale index entries", len(stale))

        scored: list[tuple[float, EmbeddingRecordBase]] = []
        for row in rows:
            if row.vector is None:
                continue
            similarity = _cosine(query, row.vector)
            if math.isfinite(similarity) and similarity > threshold:
                scored.append((similarity, row))

        scored.sort(key=lambda item: (-item[0], item[1].created_at, item[1].id or 0))
        return [
            SearchHit(
                record_id=row.record_id,
                text=row.text,
                parent_id=row.parent_id,
                similarity=similarity,
                created_at=row.created_at,
            )
            for similarity, row in scored[:limit]
        ]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _schedule_training(self) -> None:
        """Retrain a trainable index in a worker thread when it asks for it."""
        index = self._index
        if not isinstance(index, TrainableIndex) or not index.needs_training:
            return
        if self._train_task is not None and not self._train_task.done():
            return
        self._train_task = asyncio.create_task(asyncio.to_thread(index.train))
        self._train_task.add_done_callback(self._training_done)

    @staticmethod
    def _training_done(task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Index training failed: %s", task.exception())

    def _advance_high_water(self, updated_at: datetime | None) -> None:
        if updated_at is not None and (self._high_water is None or updated_at > self._high_water):
            self._high_water = updated_at

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a transaction, translating DB failures."""
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            logger.warning("Vector store operation failed: %s", exc)
            raise StorageUnavailableError(str(exc)) from exc

    async def _get(
        self,
        session: AsyncSession,
        record_id: str,
        *,
        populate_existing: bool = False,
    ) -> EmbeddingRecordBase | None:
        model = self._model
        stmt = select(model).where(model.record_id == record_id)  # type: ignore[arg-type]
        if populate_existing:
            stmt = stmt.execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _transition(
        self,
        record_id: str,
        target: EmbeddingStatus,
        **values: object,
    ) -> bool:
        check_transition(EmbeddingStatus.PENDING, target)
        model = self._model
        async with self._transaction() as session:
            result = await session.execute(
                update(model)
                .where(
                    model.record_id == record_id,  # type: ignore[arg-type]
                    model.status == EmbeddingStatus.PENDING,  # type: ignore[arg-type]
                )
                .values(status=target, updated_at=utcnow(), **values)
            )
            updated = result.rowcount == 1  # type: ignore[attr-defined]
        if not updated:
            logger.debug("Skipped %s transition for %s (missing or not pending)", target.value, record_id)
        return updated

    def _validate_new(self, record: EmbeddingRecordBase) -> None:
        if not record.text or not record.text.strip():
            raise ValidationError("Record text cannot be empty")
        if record.status != EmbeddingStatus.PENDING:
            msg = f"New records must be pending, got {EmbeddingStatus(record.status).value}"
            raise ValidationError(msg)

    @staticmethod
    def _insert_values(record: EmbeddingRecordBase) -> dict[str, object]:
        return {
            "record_id": record.record_id,
            "text": record.text,
            "parent_id": record.parent_id,
            "vector": None,
            "status": record.status,
            "error_message": None,
            "model_name": record.model_name,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }
