"""SQLModel database models for taskvec."""

from taskvec.models.records import (
    EmbeddingRecord,
    EmbeddingRecordBase,
    EmbeddingStatus,
    make_record_id,
)

__all__ = [
    "EmbeddingRecord",
    "EmbeddingRecordBase",
    "EmbeddingStatus",
    "make_record_id",
]
