"""TaskVec — synchronous wrapper around TaskVecAsync."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any

from taskvec._taskvec_async import TaskVecAsync
from taskvec.types import DEFAULT_LIMIT, DEFAULT_THRESHOLD

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncEngine

    from taskvec.generation.protocols import EmbeddingProvider
    from taskvec.models.records import EmbeddingRecordBase
    from taskvec.scheduler import JobHandle
    from taskvec.store.protocols import AnnIndex
    from taskvec.types import (
        JobResult,
        PipelineConfig,
        QueueMetrics,
        SearchResponse,
        StatusInfo,
    )

logger = logging.getLogger(__name__)


class TaskVec:
    """Synchronous facade over :class:`TaskVecAsync`.

    All pipeline work runs on a private event loop in a daemon thread, so
    background jobs keep progressing between calls and callers can use
    TaskVec from plain sync code or notebooks.

    Usage::

        with TaskVec("sqlite+aiosqlite:///tasks.db", provider) as tv:
            job = tv.enqueue(["Call the vendor"], "project-1")
            tv.wait(job)
            hits = tv.search("vendor").results
    """

    def __init__(
        self,
        engine: AsyncEngine | str,
        provider: EmbeddingProvider,
        *,
        config: PipelineConfig | None = None,
        index: AnnIndex | None = None,
    ) -> None:
        self._closed = False

        # Private event loop in a daemon thread
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, daemon=True)
        self._thread.start()

        try:
            self._async: TaskVecAsync = self._run(
                TaskVecAsync.create(engine, provider, config=config, index=index)
            )
        except BaseException:
            self._stop_loop()
            raise

    def _run(self, coro: Any) -> Any:
        """Submit *coro* to the private loop and block for the result."""
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def _stop_loop(self) -> None:
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)

    @property
    def pipeline(self) -> TaskVecAsync:
        """The underlying async pipeline (bound to the private loop)."""
        return self._async

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def submit(self, text: str, parent_id: str) -> JobHandle:
        return self._run(self._async.submit(text, parent_id))

    def enqueue(self, texts: Sequence[str], parent_id: str) -> JobHandle:
        return self._run(self._async.enqueue(texts, parent_id))

    def wait(self, handle: JobHandle, timeout: float | None = None) -> JobResult:
        """Block until *handle* resolves and return its result."""
        return self._run(handle.wait(timeout))

    def drain(self) -> None:
        self._run(self._async.drain())

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
    ) -> SearchResponse:
        return self._run(self._async.search(query, threshold=threshold, limit=limit))

    def get_status(self, record_id: str) -> StatusInfo:
        return self._run(self._async.get_status(record_id))

    def reprocess(self, record_id: str) -> JobHandle:
        return self._run(self._async.reprocess(record_id))

    def get_by_parent(self, parent_id: str) -> list[EmbeddingRecordBase]:
        return self._run(self._async.get_by_parent(parent_id))

    def delete_parent(self, parent_id: str) -> int:
        return self._run(self._async.delete_parent(parent_id))

    def metrics(self) -> QueueMetrics:
        return self._async.metrics()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Finish outstanding jobs, stop the event loop and join the thread."""
        if self._closed:
            return
        self._closed = True

        try:
            self._run(self._async.close())
        finally:
            self._stop_loop()

    def __enter__(self) -> TaskVec:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()
