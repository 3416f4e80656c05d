"""TaskVec: embeddings for tasks.

Asynchronous embedding generation, vector storage, and similarity search
for short task texts grouped under parent entities.
"""

__version__ = "0.1.0"

from taskvec._taskvec import TaskVec
from taskvec._taskvec_async import TaskVecAsync
from taskvec.exceptions import (
    InvalidTransitionError,
    ProviderError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    QueryEmbeddingUnavailableError,
    RecordNotFoundError,
    SchedulerClosedError,
    SearchTimeoutError,
    StorageUnavailableError,
    TaskVecError,
    ValidationError,
)
from taskvec.generation import (
    EmbeddingGenerator,
    EmbeddingProvider,
    GenerationError,
    GenerationErrorKind,
)
from taskvec.models import EmbeddingRecord, EmbeddingRecordBase, EmbeddingStatus, make_record_id
from taskvec.scheduler import GenerationScheduler, JobHandle
from taskvec.search import QueryEmbeddingCache, SimilaritySearchEngine
from taskvec.status import StatusTracker
from taskvec.store import DatabaseVectorStore, HNSWIndex, IVFFlatIndex, VectorStore
from taskvec.types import (
    JobProgress,
    JobResult,
    PipelineConfig,
    QueueMetrics,
    SearchHit,
    SearchResponse,
    StatusInfo,
)

__all__ = [
    "DatabaseVectorStore",
    "EmbeddingGenerator",
    "EmbeddingProvider",
    "EmbeddingRecord",
    "EmbeddingRecordBase",
    "EmbeddingStatus",
    "GenerationError",
    "GenerationErrorKind",
    "GenerationScheduler",
    "HNSWIndex",
    "IVFFlatIndex",
    "InvalidTransitionError",
    "JobHandle",
    "JobProgress",
    "JobResult",
    "PipelineConfig",
    "ProviderError",
    "ProviderRateLimitedError",
    "ProviderTimeoutError",
    "QueryEmbeddingCache",
    "QueueMetrics",
    "QueryEmbeddingUnavailableError",
    "RecordNotFoundError",
    "SchedulerClosedError",
    "SearchHit",
    "SearchResponse",
    "SearchTimeoutError",
    "SimilaritySearchEngine",
    "StatusInfo",
    "StatusTracker",
    "StorageUnavailableError",
    "TaskVec",
    "TaskVecAsync",
    "TaskVecError",
    "ValidationError",
    "VectorStore",
]
