"""Dialect-aware SQL helpers — idempotent insert."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession


def get_dialect(engine: Engine | AsyncEngine) -> str:
    """Return 'sqlite', 'postgresql', or the raw dialect name."""
    # AsyncEngine wraps a sync engine
    sync_engine = getattr(engine, "sync_engine", engine)
    name = sync_engine.dialect.name
    if name in ("postgresql", "postgres"):
        return "postgresql"
    return name


async def insert_ignore(
    session: AsyncSession,
    dialect: str,
    values: dict[str, Any],
    conflict_keys: list[str],
    model: type,
) -> int:
    """Insert *values* into *model* unless a row with the same *conflict_keys* exists.

    Returns the rowcount (1 when inserted, 0 when the row already existed).

    - SQLite/PostgreSQL: INSERT ... ON CONFLICT DO NOTHING
    """
    if dialect == "postgresql":
        from sqlalchemy.dialects import postgresql as dialect_module
    elif dialect == "sqlite":
        from sqlalchemy.dialects import sqlite as dialect_module
    else:
        msg = f"Unsupported dialect for insert_ignore: {dialect!r}"
        raise ValueError(msg)

    stmt = dialect_module.insert(model).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=conflict_keys)
    result = await session.execute(stmt)
    return result.rowcount  # type: ignore[return-value]
