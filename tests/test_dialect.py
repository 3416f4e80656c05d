"""Tests for store/dialect.py — dialect detection and idempotent insert."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from taskvec.models import EmbeddingRecord
from taskvec.store.dialect import get_dialect, insert_ignore


def _mock_engine(dialect_name: str) -> MagicMock:
    engine = MagicMock(spec=["dialect"])
    engine.dialect = MagicMock()
    engine.dialect.name = dialect_name
    return engine


class TestGetDialect:
    async def test_sqlite_async(self, async_engine):
        assert get_dialect(async_engine) == "sqlite"

    def test_postgres_variant(self):
        assert get_dialect(_mock_engine("postgres")) == "postgresql"

    def test_unknown_dialect_returns_name(self):
        assert get_dialect(_mock_engine("oracle")) == "oracle"


class TestInsertIgnore:
    async def test_insert_then_ignore(self, async_engine):
        async with async_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        factory = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
        values = {"record_id": "r1", "text": "first", "parent_id": "p1", "model_name": ""}

        async with factory() as session:
            assert await insert_ignore(session, "sqlite", values, ["record_id"], EmbeddingRecord) == 1
            await session.commit()

        async with factory() as session:
            again = dict(values, text="second")
            assert await insert_ignore(session, "sqlite", again, ["record_id"], EmbeddingRecord) == 0
            await session.commit()

        async with factory() as session:
            rows = (await session.execute(select(EmbeddingRecord))).scalars().all()
        assert [r.text for r in rows] == ["first"]

    async def test_unsupported_dialect(self):
        with pytest.raises(ValueError, match="Unsupported dialect"):
            await insert_ignore(MagicMock(), "mssql", {}, ["record_id"], EmbeddingRecord)
