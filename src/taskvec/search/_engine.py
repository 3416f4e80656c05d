"""SimilaritySearchEngine — embeds a query and ranks stored vectors against it."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import TYPE_CHECKING

from taskvec.exceptions import (
    QueryEmbeddingUnavailableError,
    SearchTimeoutError,
    ValidationError,
)
from taskvec.generation._generator import GenerationError
from taskvec.types import (
    DEFAULT_LIMIT,
    DEFAULT_SEARCH_TIMEOUT,
    DEFAULT_THRESHOLD,
    MAX_LIMIT,
    SearchResponse,
)

if TYPE_CHECKING:
    from taskvec.generation._generator import EmbeddingGenerator
    from taskvec.search.cache import QueryEmbeddingCache
    from taskvec.store.protocols import VectorStore

logger = logging.getLogger(__name__)


def validate_search_request(query: object, threshold: object, limit: object) -> None:
    """Raise :class:`ValidationError` for an empty query or out-of-range parameters."""
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Query cannot be empty")
    if (
        isinstance(threshold, bool)
        or not isinstance(threshold, (int, float))
        or not math.isfinite(threshold)
        or not 0.0 <= threshold <= 1.0
    ):
        raise ValidationError("Threshold must be between 0.0 and 1.0")
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValidationError("Limit must be a positive integer")
    if limit > MAX_LIMIT:
        msg = f"Limit cannot exceed {MAX_LIMIT}"
        raise ValidationError(msg)


class SimilaritySearchEngine:
    """Query-time orchestrator over an :class:`EmbeddingGenerator` and a ``VectorStore``.

    The query is embedded once (or served from the optional cache), then
    the store returns ``completed`` records ranked by cosine similarity.
    If the query cannot be embedded the search fails with
    :class:`QueryEmbeddingUnavailableError` instead of returning a
    degraded result set.  The whole call is bounded by *timeout* seconds.
    """

    def __init__(
        self,
        generator: EmbeddingGenerator,
        store: VectorStore,
        *,
        timeout: float = DEFAULT_SEARCH_TIMEOUT,
        cache: QueryEmbeddingCache | None = None,
    ) -> None:
        self._generator = generator
        self._store = store
        self._timeout = timeout
        self._cache = cache

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def cache(self) -> QueryEmbeddingCache | None:
        return self._cache

    async def search(
        self,
        query: str,
        threshold: float = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
    ) -> SearchResponse:
        """Return up to *limit* records with similarity strictly above *threshold*."""
        validate_search_request(query, threshold, limit)

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._search(query, float(threshold), limit), timeout=self._timeout
            )
        except TimeoutError as exc:
            logger.warning("Search timed out after %.2fs", self._timeout)
            msg = f"Search exceeded its {self._timeout}s deadline"
            raise SearchTimeoutError(msg) from exc

        logger.info(
            "Search complete (%.1fms) - results: %d, threshold: %.2f, limit: %d",
            (time.monotonic() - started) * 1000,
            response.count,
            threshold,
            limit,
        )
        return response

    async def _search(self, query: str, threshold: float, limit: int) -> SearchResponse:
        vector = await self._embed_query(query)
        hits = await self._store.search(vector, threshold=threshold, limit=limit)
        return SearchResponse(results=hits, query=query, count=len(hits))

    async def _embed_query(self, query: str) -> list[float]:
        if self._cache is not None:
            cached = self._cache.get(query)
            if cached is not None:
                return cached

        outcome = await self._generator.generate(query)
        if isinstance(outcome, GenerationError):
            raise QueryEmbeddingUnavailableError(
                f"Embedding service unavailable for query: {outcome.describe()}",
                kind=outcome.kind.value,
            )

        if self._cache is not None:
            self._cache.set(query, outcome)
        return outcome
