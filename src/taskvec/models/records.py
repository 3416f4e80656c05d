"""EmbeddingRecord model — one row per task text per parent.

Provides ``EmbeddingRecordBase`` (non-table base) and ``EmbeddingRecord``
(concrete table).  Subclass ``EmbeddingRecordBase`` with ``table=True`` and a
custom ``__tablename__`` to use a different table name per backend.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import JSON, DateTime
from sqlmodel import Field, SQLModel


class EmbeddingStatus(str, Enum):
    """Lifecycle state of an embedding record."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def make_record_id(text: str, parent_id: str) -> str:
    """Return the natural key for *text* owned by *parent_id*.

    Identical ``(text, parent_id)`` pairs always hash to the same id, so
    re-ingesting unchanged content never creates a second row.
    """
    return hashlib.sha256(f"{text}||{parent_id}".encode()).hexdigest()


def utcnow() -> datetime:
    return datetime.now(UTC)


class EmbeddingRecordBase(SQLModel):
    """Base fields for an embedding record. Subclass with ``table=True`` for a concrete table."""

    id: int | None = Field(default=None, primary_key=True)
    record_id: str = Field(index=True, unique=True)
    text: str
    parent_id: str = Field(index=True)
    vector: list[float] | None = Field(
        default=None,
        sa_type=JSON(none_as_null=True),  # type: ignore[invalid-argument-type]
    )
    status: EmbeddingStatus = Field(default=EmbeddingStatus.PENDING, index=True)
    error_message: str | None = Field(default=None)
    model_name: str = Field(default="")
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        index=True,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class EmbeddingRecord(EmbeddingRecordBase, table=True):
    """Default embedding table — ``taskvec_embeddings``."""

    __tablename__ = "taskvec_embeddings"
