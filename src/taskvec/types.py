"""Value objects shared across the pipeline — results, progress, configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from taskvec.models.records import EmbeddingStatus

# ------------------------------------------------------------------
# Defaults
# ------------------------------------------------------------------

DEFAULT_DIMENSION: int = 1536
"""Vector length produced by ``text-embedding-3-small``."""

DEFAULT_MAX_CONCURRENT_JOBS: int = 3
DEFAULT_BATCH_SIZE: int = 50
DEFAULT_GENERATE_TIMEOUT: float = 10.0
DEFAULT_SEARCH_TIMEOUT: float = 2.0
DEFAULT_THRESHOLD: float = 0.7
DEFAULT_LIMIT: int = 20
MAX_LIMIT: int = 100


# ------------------------------------------------------------------
# Configuration
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Tunables for a :class:`~taskvec.TaskVecAsync` pipeline.

    Attributes:
        dimension: Process-wide vector length ``D``.
        max_concurrent_jobs: Parent-level jobs allowed in flight at once.
        batch_size: Items per generator burst inside one job.
        max_parallel_calls: Concurrent generator calls per burst
            (defaults to *batch_size*).
        min_batch_interval: Minimum seconds between the starts of two
            bursts of the same job, to stay under a provider rate limit.
        generate_timeout: Deadline in seconds for one generator call.
        search_timeout: Deadline in seconds for a whole search call.
        query_cache_ttl: Seconds a query embedding stays cached
            (``0`` disables the cache).
        query_cache_size: Maximum number of cached query embeddings.
        index_refresh_interval: Minimum seconds between catch-up scans for
            rows completed by other writers (``0`` scans before every search).
    """

    dimension: int = DEFAULT_DIMENSION
    max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS
    batch_size: int = DEFAULT_BATCH_SIZE
    max_parallel_calls: int | None = None
    min_batch_interval: float = 0.0
    generate_timeout: float = DEFAULT_GENERATE_TIMEOUT
    search_timeout: float = DEFAULT_SEARCH_TIMEOUT
    query_cache_ttl: float = 300.0
    query_cache_size: int = 1024
    index_refresh_interval: float = 0.0


# ------------------------------------------------------------------
# Search
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SearchHit:
    """A single ranked search result.

    Attributes:
        record_id: Natural key of the matched record.
        text: The task text that matched.
        parent_id: Owning parent entity.
        similarity: ``1 - cosine_distance`` to the query vector.
        created_at: Creation time of the record (ordering tie-break).
    """

    record_id: str
    text: str
    parent_id: str
    similarity: float
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class SearchResponse:
    """Result of a similarity search: ranked hits plus the echoed query."""

    results: list[SearchHit]
    query: str
    count: int


# ------------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class JobProgress:
    """Snapshot of a job's progress."""

    job_id: str
    parent_id: str
    processed: int
    total: int

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 1.0
        return self.processed / self.total


@dataclass(frozen=True, slots=True)
class JobResult:
    """Outcome of one job once all of its writes have been applied.

    Attributes:
        job_id: Identifier of the job.
        parent_id: Parent the job's items belong to.
        total: Items submitted with the job.
        completed: Items that reached ``completed``.
        failed: Items that reached ``failed``.
        skipped: Items already stored (or in flight) and not regenerated.
        discarded: Outcomes dropped because the record was deleted or
            left the pending state while the job ran.
        duration: Wall-clock seconds from admission to resolution.
        record_ids: Record ids of every submitted item, in submission order.
    """

    job_id: str
    parent_id: str
    total: int
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    discarded: int = 0
    duration: float = 0.0
    record_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class QueueMetrics:
    """Scheduler counters for monitoring."""

    queue_depth: int
    active_jobs: int
    total_processed: int
    total_failed: int


# ------------------------------------------------------------------
# Status
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StatusInfo:
    """Externally visible lifecycle state of one record."""

    record_id: str
    status: EmbeddingStatus
    error_message: str | None = None
    updated_at: datetime | None = None
