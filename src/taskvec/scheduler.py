"""GenerationScheduler — bounded-concurrency batch embedding with per-item outcomes."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

from taskvec.exceptions import SchedulerClosedError, ValidationError
from taskvec.generation._generator import GenerationError
from taskvec.models.records import EmbeddingRecord, EmbeddingStatus, make_record_id
from taskvec.types import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_CONCURRENT_JOBS,
    JobProgress,
    JobResult,
    QueueMetrics,
)

if TYPE_CHECKING:
    from collections.abc import Generator, Sequence

    from taskvec.generation._generator import EmbeddingGenerator
    from taskvec.models.records import EmbeddingRecordBase
    from taskvec.store.protocols import VectorStore

logger = logging.getLogger(__name__)


class JobHandle:
    """Handle to one enqueued job.

    Await the handle (or :meth:`wait`) to get the :class:`JobResult` once
    every item's outcome has been written.  If the vector store failed
    during the job, awaiting re-raises that
    :class:`~taskvec.exceptions.StorageUnavailableError`.
    """

    def __init__(self, job_id: str, parent_id: str, record_ids: list[str]) -> None:
        self.job_id = job_id
        self.parent_id = parent_id
        self.record_ids = record_ids
        self.total = len(record_ids)
        self.processed = 0
        self.completed = 0
        self.failed = 0
        self.skipped = 0
        self.discarded = 0
        self._started = time.monotonic()
        self._future: asyncio.Future[JobResult] = asyncio.get_running_loop().create_future()
        # Errors are logged by the scheduler; awaiting still re-raises them.
        self._future.add_done_callback(lambda f: f.cancelled() or f.exception())

    @property
    def progress(self) -> JobProgress:
        """Snapshot of ``processed / total``."""
        return JobProgress(
            job_id=self.job_id,
            parent_id=self.parent_id,
            processed=self.processed,
            total=self.total,
        )

    def done(self) -> bool:
        """Return whether the job has resolved (successfully or not)."""
        return self._future.done()

    async def wait(self, timeout: float | None = None) -> JobResult:
        """Wait for the job to resolve and return its result."""
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)

    def result(self) -> JobResult:
        """Return the result of a resolved job (raises if it failed or is pending)."""
        return self._future.result()

    def __await__(self) -> Generator[Any, None, JobResult]:
        return self.wait().__await__()

    def __repr__(self) -> str:
        return (
            f"JobHandle(job_id={self.job_id!r}, parent_id={self.parent_id!r}, "
            f"processed={self.processed}, total={self.total})"
        )

    # ------------------------------------------------------------------
    # Scheduler-side
    # ------------------------------------------------------------------

    def _build_result(self) -> JobResult:
        return JobResult(
            job_id=self.job_id,
            parent_id=self.parent_id,
            total=self.total,
            completed=self.completed,
            failed=self.failed,
            skipped=self.skipped,
            discarded=self.discarded,
            duration=time.monotonic() - self._started,
            record_ids=list(self.record_ids),
        )

    def _resolve(self) -> None:
        if not self._future.done():
            self._future.set_result(self._build_result())

    def _reject(self, exc: BaseException) -> None:
        if self._future.done():
            return
        if isinstance(exc, asyncio.CancelledError):
            self._future.cancel()
        else:
            self._future.set_exception(exc)


class GenerationScheduler:
    """Accepts batches of task texts and embeds them under two bounds.

    - At most *max_concurrent_jobs* parent-level jobs run at once; the rest
      wait FIFO for a slot.
    - Inside a job, items are processed in sub-batches of *batch_size*,
      each sub-batch issuing at most *max_parallel_calls* concurrent
      generator calls, with sub-batch starts spaced at least
      *min_batch_interval* seconds apart.

    A generator failure is recorded on its own record as ``failed`` and
    never aborts the batch.  A vector store failure aborts the job and is
    re-raised to whoever awaits the :class:`JobHandle`; items not yet
    written remain ``pending``.
    """

    def __init__(
        self,
        generator: EmbeddingGenerator,
        store: VectorStore,
        *,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_parallel_calls: int | None = None,
        min_batch_interval: float = 0.0,
    ) -> None:
        if max_concurrent_jobs < 1:
            msg = "max_concurrent_jobs must be >= 1"
            raise ValueError(msg)
        if batch_size < 1:
            msg = "batch_size must be >= 1"
            raise ValueError(msg)
        self._generator = generator
        self._store = store
        self._max_concurrent_jobs = max_concurrent_jobs
        self._batch_size = batch_size
        self._max_parallel_calls = max_parallel_calls or batch_size
        self._min_batch_interval = min_batch_interval

        self._slots = asyncio.Semaphore(max_concurrent_jobs)
        self._tasks: set[asyncio.Task[None]] = set()
        self._jobs: dict[str, JobHandle] = {}
        self._in_flight: set[str] = set()
        self._closed = False

        # Metrics
        self._queue_depth = 0
        self._active_jobs = 0
        self._total_processed = 0
        self._total_failed = 0

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def enqueue(self, items: Sequence[str], parent_id: str) -> JobHandle:
        """Accept *items* for *parent_id* and start a job for them.

        Every item is validated before anything is written.  Pending rows
        are created immediately; items whose row already exists in a
        terminal state, or is already being processed, are skipped.
        """
        if self._closed:
            raise SchedulerClosedError("Scheduler is closed")
        texts = self._validate(items, parent_id)

        record_ids = [make_record_id(text, parent_id) for text in texts]
        handle = JobHandle(uuid.uuid4().hex, parent_id, record_ids)

        unique: dict[str, EmbeddingRecord] = {}
        for text, record_id in zip(texts, record_ids, strict=True):
            if record_id not in unique:
                unique[record_id] = EmbeddingRecord(
                    record_id=record_id,
                    text=text,
                    parent_id=parent_id,
                    model_name=self._generator.model_name,
                )
        stored = await self._store.upsert_many(list(unique.values()))

        to_process: list[EmbeddingRecordBase] = []
        for record in stored:
            if record.status == EmbeddingStatus.PENDING and record.record_id not in self._in_flight:
                to_process.append(record)
                self._in_flight.add(record.record_id)
        handle.skipped = handle.total - len(to_process)
        handle.processed = handle.skipped

        if not to_process:
            logger.info(
                "Nothing to embed for parent %s (%d items already stored)",
                parent_id,
                handle.total,
            )
            handle._resolve()
            return handle

        self._queue_depth += len(to_process)
        self._jobs[handle.job_id] = handle
        task = asyncio.create_task(self._run_job(handle, to_process))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "Enqueued %d tasks for parent %s (job %s, queue depth: %d, active jobs: %d)",
            len(to_process),
            parent_id,
            handle.job_id[:8],
            self._queue_depth,
            self._active_jobs,
        )
        return handle

    async def submit(self, text: str, parent_id: str) -> JobHandle:
        """Enqueue a single text.  Callers may ignore the returned handle."""
        return await self.enqueue([text], parent_id)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def queue_depth(self) -> int:
        """Items admitted but not yet resolved."""
        return self._queue_depth

    @property
    def active_jobs(self) -> int:
        """Jobs currently holding a concurrency slot."""
        return self._active_jobs

    def metrics(self) -> QueueMetrics:
        return QueueMetrics(
            queue_depth=self._queue_depth,
            active_jobs=self._active_jobs,
            total_processed=self._total_processed,
            total_failed=self._total_failed,
        )

    def get_job(self, job_id: str) -> JobHandle | None:
        """Return the handle of an unresolved job, or None."""
        return self._jobs.get(job_id)

    def is_in_flight(self, record_id: str) -> bool:
        return record_id in self._in_flight

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait until every outstanding job has resolved."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Reject new work and wait for outstanding jobs."""
        self._closed = True
        await self.drain()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(items: Sequence[str], parent_id: str) -> list[str]:
        if isinstance(items, str):
            raise ValidationError("items must be a sequence of strings, not a single string")
        if not isinstance(parent_id, str) or not parent_id.strip():
            raise ValidationError("parent_id cannot be empty")
        texts = list(items)
        for position, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                msg = f"Task text at position {position} cannot be empty"
                raise ValidationError(msg)
        return texts

    async def _run_job(self, handle: JobHandle, records: list[EmbeddingRecordBase]) -> None:
        pending = {r.record_id for r in records}
        try:
            async with self._slots:
                self._active_jobs += 1
                try:
                    await self._process_job(handle, records, pending)
                finally:
                    self._active_jobs -= 1
        except BaseException as exc:
            logger.error(
                "Job %s for parent %s aborted after %d/%d items: %s",
                handle.job_id[:8],
                handle.parent_id,
                handle.processed,
                handle.total,
                exc,
            )
            handle._reject(exc)
            if not isinstance(exc, Exception):
                raise
        else:
            result = handle._build_result()
            logger.info(
                "Job %s for parent %s complete (%.1fs) - completed: %d, failed: %d, skipped: %d",
                handle.job_id[:8],
                handle.parent_id,
                result.duration,
                result.completed,
                result.failed,
                result.skipped,
            )
            handle._resolve()
        finally:
            # Items left unresolved by an aborted job stay pending.
            self._queue_depth -= len(pending)
            self._in_flight.difference_update(pending)
            self._jobs.pop(handle.job_id, None)

    async def _process_job(
        self,
        handle: JobHandle,
        records: list[EmbeddingRecordBase],
        pending: set[str],
    ) -> None:
        batches = [
            records[i : i + self._batch_size] for i in range(0, len(records), self._batch_size)
        ]
        calls = asyncio.Semaphore(self._max_parallel_calls)
        logger.debug(
            "Processing %d batch(es) for parent %s",
            len(batches),
            handle.parent_id,
        )

        last_start: float | None = None
        for number, batch in enumerate(batches, start=1):
            if last_start is not None and self._min_batch_interval > 0:
                wait = self._min_batch_interval - (time.monotonic() - last_start)
                if wait > 0:
                    await asyncio.sleep(wait)
            last_start = time.monotonic()

            outcomes = await asyncio.gather(
                *(self._process_item(handle, record, calls, pending) for record in batch),
                return_exceptions=True,
            )
            errors = [o for o in outcomes if isinstance(o, BaseException)]
            if errors:
                raise errors[0]
            logger.debug(
                "Batch %d/%d complete for parent %s (%d items)",
                number,
                len(batches),
                handle.parent_id,
                len(batch),
            )

    async def _process_item(
        self,
        handle: JobHandle,
        record: EmbeddingRecordBase,
        calls: asyncio.Semaphore,
        pending: set[str],
    ) -> None:
        async with calls:
            outcome = await self._generator.generate(record.text)

        if isinstance(outcome, GenerationError):
            written = await self._store.mark_failed(record.record_id, outcome.describe())
            if written:
                handle.failed += 1
                self._total_failed += 1
        else:
            written = await self._store.mark_completed(
                record.record_id, outcome, model_name=self._generator.model_name
            )
            if written:
                handle.completed += 1
                self._total_processed += 1

        if not written:
            handle.discarded += 1
            logger.debug("Discarded outcome for %s (record gone or no longer pending)", record.record_id)

        handle.processed += 1
        pending.discard(record.record_id)
        self._queue_depth -= 1
        self._in_flight.discard(record.record_id)
