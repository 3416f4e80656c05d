"""Tests for GenerationScheduler — batched, bounded background embedding."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FAKE_DIM
from taskvec.exceptions import (
    ProviderRateLimitedError,
    SchedulerClosedError,
    StorageUnavailableError,
    ValidationError,
)
from taskvec.generation import EmbeddingGenerator
from taskvec.models import EmbeddingStatus, make_record_id
from taskvec.scheduler import GenerationScheduler


@pytest.fixture
async def scheduler(generator, store):
    s = GenerationScheduler(generator, store, max_concurrent_jobs=3, batch_size=50)
    yield s
    await s.close()


class BrokenStore:
    """Delegates to a real store but fails every completion write."""

    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def mark_completed(self, record_id, vector, *, model_name=""):
        raise StorageUnavailableError("database is gone")


# ------------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------------


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_rows_pending_before_processing(self, scheduler, store, provider):
        provider.delay = 0.2
        handle = await scheduler.enqueue(["a", "b"], "p1")
        rows = await store.get_by_parent("p1")
        assert [r.status for r in rows] == [EmbeddingStatus.PENDING] * 2
        await handle

    @pytest.mark.asyncio
    async def test_job_completes_all_items(self, scheduler, store):
        handle = await scheduler.enqueue(["Call vendor", "Send invoice", "Book room"], "p1")
        result = await handle
        assert result.total == 3
        assert result.completed == 3
        assert result.failed == 0
        assert handle.done()
        rows = await store.get_by_parent("p1")
        assert all(r.status == EmbeddingStatus.COMPLETED for r in rows)
        assert all(len(r.vector) == FAKE_DIM for r in rows)
        assert all(r.model_name == "fake-embedding" for r in rows)

    @pytest.mark.asyncio
    async def test_record_ids_in_submission_order(self, scheduler):
        handle = await scheduler.enqueue(["x", "y"], "p1")
        assert handle.record_ids == [make_record_id("x", "p1"), make_record_id("y", "p1")]
        await handle

    @pytest.mark.asyncio
    async def test_submit_single(self, scheduler, store):
        handle = await scheduler.submit("Water plants", "p1")
        result = await handle.wait(timeout=5)
        assert result.completed == 1
        record = await store.get(make_record_id("Water plants", "p1"))
        assert record.status == EmbeddingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_batch_resolves_immediately(self, scheduler):
        handle = await scheduler.enqueue([], "p1")
        assert handle.done()
        assert (await handle).total == 0

    @pytest.mark.asyncio
    async def test_progress(self, scheduler, provider):
        provider.delay = 0.05
        handle = await scheduler.enqueue(["a", "b", "c", "d"], "p1")
        assert handle.progress.processed == 0
        assert handle.progress.total == 4
        await handle
        assert handle.progress.processed == 4
        assert handle.progress.fraction == 1.0


class TestValidation:
    @pytest.mark.asyncio
    async def test_empty_text_rejects_whole_batch(self, scheduler, store, provider):
        with pytest.raises(ValidationError, match="position 1"):
            await scheduler.enqueue(["ok", "  ", "fine"], "p1")
        assert await store.count() == 0
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_empty_parent(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.enqueue(["a"], "")

    @pytest.mark.asyncio
    async def test_bare_string_rejected(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.enqueue("abc", "p1")

    def test_bad_bounds(self, generator, store):
        with pytest.raises(ValueError):
            GenerationScheduler(generator, store, max_concurrent_jobs=0)
        with pytest.raises(ValueError):
            GenerationScheduler(generator, store, batch_size=0)


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_resubmission_skips_completed(self, scheduler, store, provider):
        await (await scheduler.enqueue(["a", "b"], "p1"))
        provider.calls.clear()

        result = await (await scheduler.enqueue(["a", "b", "c"], "p1"))
        assert provider.calls == ["c"]
        assert result.skipped == 2
        assert result.completed == 1
        assert await store.count() == 3

    @pytest.mark.asyncio
    async def test_duplicates_within_batch(self, scheduler, store, provider):
        result = await (await scheduler.enqueue(["same", "same"], "p1"))
        assert provider.calls == ["same"]
        assert result.total == 2
        assert result.completed == 1
        assert result.skipped == 1
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_in_flight_not_processed_twice(self, scheduler, provider):
        provider.delay = 0.2
        first = await scheduler.enqueue(["slow"], "p1")
        second = await scheduler.enqueue(["slow"], "p1")
        assert second.done()
        assert (await second).skipped == 1
        await first
        assert provider.calls == ["slow"]

    @pytest.mark.asyncio
    async def test_failed_items_not_retried_on_resubmit(self, scheduler, provider):
        provider.errors["bad"] = RuntimeError("boom")
        await (await scheduler.enqueue(["bad"], "p1"))
        provider.calls.clear()
        result = await (await scheduler.enqueue(["bad"], "p1"))
        assert provider.calls == []
        assert result.skipped == 1


# ------------------------------------------------------------------
# Failure isolation
# ------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_isolated_to_item(self, scheduler, store, provider):
        provider.errors["Call vendor"] = ProviderRateLimitedError("429")
        handle = await scheduler.enqueue(["Email client", "Call vendor", "Book room"], "p1")
        result = await handle
        assert result.completed == 2
        assert result.failed == 1

        bad = await store.get(make_record_id("Call vendor", "p1"))
        assert bad.status == EmbeddingStatus.FAILED
        assert bad.error_message.startswith("rate_limited")
        assert bad.vector is None

    @pytest.mark.asyncio
    async def test_timeout_marks_failed(self, store, provider):
        provider.delay = 0.3
        gen = EmbeddingGenerator(provider, dimension=FAKE_DIM, timeout=0.05)
        sched = GenerationScheduler(gen, store)
        result = await (await sched.enqueue(["slow"], "p1"))
        assert result.failed == 1
        record = await store.get(make_record_id("slow", "p1"))
        assert record.error_message.startswith("timeout")
        await sched.close()

    @pytest.mark.asyncio
    async def test_storage_failure_aborts_job(self, generator, store):
        sched = GenerationScheduler(generator, BrokenStore(store))
        handle = await sched.enqueue(["a", "b"], "p1")
        with pytest.raises(StorageUnavailableError):
            await handle
        rows = await store.get_by_parent("p1")
        assert all(r.status == EmbeddingStatus.PENDING for r in rows)
        assert sched.queue_depth == 0
        assert not sched.is_in_flight(make_record_id("a", "p1"))
        await sched.close()

    @pytest.mark.asyncio
    async def test_parent_deleted_mid_job(self, scheduler, store, provider):
        provider.delay = 0.2
        handle = await scheduler.enqueue(["a", "b"], "p1")
        await store.delete_by_parent("p1")
        result = await handle
        assert result.completed == 0
        assert result.discarded == 2
        assert await store.count() == 0
        assert len(store.index) == 0


# ------------------------------------------------------------------
# Concurrency bounds
# ------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_max_concurrent_jobs(self, generator, store, provider):
        sched = GenerationScheduler(generator, store, max_concurrent_jobs=2)
        observed: list[int] = []
        provider.on_call = lambda _text: observed.append(sched.active_jobs)
        provider.delay = 0.05

        handles = [await sched.enqueue([f"task {i}"], f"parent-{i}") for i in range(5)]
        results = await asyncio.gather(*(h.wait() for h in handles))

        assert all(r.completed == 1 for r in results)
        assert max(observed) <= 2
        assert provider.max_active <= 2
        await sched.close()

    @pytest.mark.asyncio
    async def test_sub_batches(self, generator, store, provider):
        sched = GenerationScheduler(generator, store, batch_size=2, max_parallel_calls=2)
        provider.delay = 0.02
        result = await (await sched.enqueue([f"t{i}" for i in range(5)], "p1"))
        assert result.completed == 5
        assert provider.max_active <= 2
        await sched.close()

    @pytest.mark.asyncio
    async def test_jobs_admitted_fifo(self, generator, store, provider):
        sched = GenerationScheduler(generator, store, max_concurrent_jobs=1)
        provider.delay = 0.01
        for i in range(4):
            await sched.enqueue([f"job {i}"], f"parent-{i}")
        await sched.drain()
        assert provider.calls == [f"job {i}" for i in range(4)]
        await sched.close()

    @pytest.mark.asyncio
    async def test_min_batch_interval(self, generator, store):
        sched = GenerationScheduler(generator, store, batch_size=1, min_batch_interval=0.05)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await (await sched.enqueue(["a", "b", "c"], "p1"))
        assert loop.time() - started >= 0.1
        await sched.close()


# ------------------------------------------------------------------
# Metrics / lifecycle
# ------------------------------------------------------------------


class TestMetricsAndLifecycle:
    @pytest.mark.asyncio
    async def test_metrics(self, scheduler, provider):
        provider.errors["bad"] = RuntimeError("boom")
        await (await scheduler.enqueue(["good", "bad"], "p1"))
        metrics = scheduler.metrics()
        assert metrics.queue_depth == 0
        assert metrics.active_jobs == 0
        assert metrics.total_processed == 1
        assert metrics.total_failed == 1

    @pytest.mark.asyncio
    async def test_get_job(self, scheduler, provider):
        provider.delay = 0.1
        handle = await scheduler.enqueue(["a"], "p1")
        assert scheduler.get_job(handle.job_id) is handle
        await handle
        assert scheduler.get_job(handle.job_id) is None

    @pytest.mark.asyncio
    async def test_close_waits_and_rejects(self, generator, store, provider):
        sched = GenerationScheduler(generator, store)
        provider.delay = 0.05
        handle = await sched.enqueue(["a"], "p1")
        await sched.close()
        assert handle.done()
        assert sched.closed
        with pytest.raises(SchedulerClosedError):
            await sched.enqueue(["b"], "p1")

    @pytest.mark.asyncio
    async def test_fire_and_forget(self, scheduler, store):
        await scheduler.submit("ignored handle", "p1")
        await scheduler.drain()
        record = await store.get(make_record_id("ignored handle", "p1"))
        assert record.status == EmbeddingStatus.COMPLETED
