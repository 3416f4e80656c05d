"""Shared fixtures for TaskVec tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from fakes import FAKE_DIM, FakeProvider
from taskvec.generation import EmbeddingGenerator
from taskvec.store import DatabaseVectorStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """File-backed SQLite URL so concurrent sessions get their own connections."""
    return f"sqlite+aiosqlite:///{tmp_path / 'taskvec.db'}"


@pytest.fixture
async def async_engine(db_url: str) -> AsyncIterator[AsyncEngine]:
    eng = create_async_engine(db_url, echo=False)
    yield eng
    await eng.dispose()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def generator(provider: FakeProvider) -> EmbeddingGenerator:
    return EmbeddingGenerator(provider, dimension=FAKE_DIM, timeout=1.0)


@pytest.fixture
async def store(async_engine: AsyncEngine) -> AsyncIterator[DatabaseVectorStore]:
    s = DatabaseVectorStore(async_engine, dimension=FAKE_DIM)
    await s.connect()
    yield s
    await s.close()
