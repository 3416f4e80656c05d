"""TaskVecAsync — primary async class wiring the embedding pipeline."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from taskvec.exceptions import ValidationError
from taskvec.generation._generator import EmbeddingGenerator
from taskvec.scheduler import GenerationScheduler
from taskvec.search._engine import SimilaritySearchEngine
from taskvec.search.cache import QueryEmbeddingCache
from taskvec.status import StatusTracker
from taskvec.store.database import DatabaseVectorStore
from taskvec.types import DEFAULT_LIMIT, DEFAULT_THRESHOLD, PipelineConfig

if TYPE_CHECKING:
    from collections.abc import Sequence

    from taskvec.generation.protocols import EmbeddingProvider
    from taskvec.models.records import EmbeddingRecordBase
    from taskvec.scheduler import JobHandle
    from taskvec.store.protocols import AnnIndex
    from taskvec.types import QueueMetrics, SearchResponse, StatusInfo

logger = logging.getLogger(__name__)


class TaskVecAsync:
    """Async facade over generation, storage, scheduling, search and status.

    Build one with :meth:`create` from an engine (or a database URL) and an
    embedding provider::

        async with await TaskVecAsync.create("sqlite+aiosqlite:///tasks.db", provider) as tv:
            job = await tv.enqueue(["Call the vendor", "Send invoice"], "project-1")
            await job
            response = await tv.search("vendor follow-up")

    Ingestion returns as soon as the rows are written as ``pending``; the
    returned :class:`~taskvec.scheduler.JobHandle` can be awaited or ignored.
    """

    def __init__(
        self,
        store: DatabaseVectorStore,
        generator: EmbeddingGenerator,
        *,
        config: PipelineConfig | None = None,
        owns_engine: bool = False,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._config = config or PipelineConfig(dimension=generator.dimension)
        self._store = store
        self._generator = generator
        self._engine = engine
        self._owns_engine = owns_engine
        self._closed = False

        self._scheduler = GenerationScheduler(
            generator,
            store,
            max_concurrent_jobs=self._config.max_concurrent_jobs,
            batch_size=self._config.batch_size,
            max_parallel_calls=self._config.max_parallel_calls,
            min_batch_interval=self._config.min_batch_interval,
        )
        cache = None
        if self._config.query_cache_ttl > 0 and self._config.query_cache_size > 0:
            cache = QueryEmbeddingCache(
                ttl=self._config.query_cache_ttl,
                max_entries=self._config.query_cache_size,
            )
        self._search_engine = SimilaritySearchEngine(
            generator, store, timeout=self._config.search_timeout, cache=cache
        )
        self._tracker = StatusTracker(store, self._scheduler)

    @classmethod
    async def create(
        cls,
        engine: AsyncEngine | str,
        provider: EmbeddingProvider,
        *,
        config: PipelineConfig | None = None,
        index: AnnIndex | None = None,
    ) -> TaskVecAsync:
        """Connect the store and return a ready pipeline.

        *engine* may be an ``AsyncEngine`` or an async database URL; an
        engine created from a URL is disposed by :meth:`close`.  Without a
        *config* the dimension is taken from the provider.
        """
        if config is None:
            config = PipelineConfig(dimension=provider.dimensions)
        elif provider.dimensions != config.dimension:
            msg = (
                f"Provider {provider.model_name} produces {provider.dimensions}-dimensional "
                f"vectors, pipeline is configured for {config.dimension}"
            )
            raise ValidationError(msg)

        owns_engine = isinstance(engine, str)
        if isinstance(engine, str):
            engine = create_async_engine(engine)

        generator = EmbeddingGenerator(
            provider, dimension=config.dimension, timeout=config.generate_timeout
        )
        store = DatabaseVectorStore(
            engine,
            dimension=config.dimension,
            index=index,
            refresh_interval=config.index_refresh_interval,
        )
        try:
            await store.connect()
        except Exception:
            if owns_engine:
                await engine.dispose()
            raise

        logger.info(
            "TaskVec pipeline ready (model: %s, dimension: %d, dialect: %s)",
            provider.model_name,
            config.dimension,
            store.dialect,
        )
        return cls(store, generator, config=config, owns_engine=owns_engine, engine=engine)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def store(self) -> DatabaseVectorStore:
        return self._store

    @property
    def generator(self) -> EmbeddingGenerator:
        return self._generator

    @property
    def scheduler(self) -> GenerationScheduler:
        return self._scheduler

    @property
    def search_engine(self) -> SimilaritySearchEngine:
        return self._search_engine

    @property
    def tracker(self) -> StatusTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def submit(self, text: str, parent_id: str) -> JobHandle:
        """Queue one task text for embedding."""
        return await self._scheduler.submit(text, parent_id)

    async def enqueue(self, texts: Sequence[str], parent_id: str) -> JobHandle:
        """Queue a batch of task texts belonging to *parent_id*."""
        return await self._scheduler.enqueue(texts, parent_id)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
    ) -> SearchResponse:
        return await self._search_engine.search(query, threshold=threshold, limit=limit)

    async def get_status(self, record_id: str) -> StatusInfo:
        return await self._tracker.get_status(record_id)

    async def reprocess(self, record_id: str) -> JobHandle:
        """Send a failed (or stuck pending) record back through generation."""
        return await self._tracker.reprocess(record_id)

    async def get_by_parent(self, parent_id: str) -> list[EmbeddingRecordBase]:
        return await self._store.get_by_parent(parent_id)

    async def delete_parent(self, parent_id: str) -> int:
        """Delete every record of *parent_id*; returns the number removed."""
        deleted = await self._store.delete_by_parent(parent_id)
        logger.info("Deleted %d records for parent %s", deleted, parent_id)
        return deleted

    def metrics(self) -> QueueMetrics:
        return self._scheduler.metrics()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait for every outstanding job to resolve."""
        await self._scheduler.drain()

    async def close(self) -> None:
        """Finish outstanding jobs, then release the store and provider."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._scheduler.close()
        finally:
            await self._store.close()
            provider_close = getattr(self._generator.provider, "close", None)
            if provider_close is not None:
                await provider_close()
            if self._owns_engine and self._engine is not None:
                await self._engine.dispose()

    async def __aenter__(self) -> TaskVecAsync:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
