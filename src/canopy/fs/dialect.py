"""Dialect-aware SQL helpers — insert-or-ignore for membership rows."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import tuple_
from sqlmodel import select

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

# Keeps bound-parameter counts under SQLite's limit for large subtrees.
BATCH_SIZE = 500


def get_dialect(engine: Engine | AsyncEngine) -> str:
    """Return 'sqlite', 'postgresql', or the raw dialect name."""
    # AsyncEngine wraps a sync engine
    sync_engine = getattr(engine, "sync_engine", engine)
    name = sync_engine.dialect.name
    if name in ("postgresql", "postgres"):
        return "postgresql"
    return name


def batched(items: list[Any], size: int = BATCH_SIZE) -> list[list[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


async def insert_ignore(
    session: AsyncSession,
    dialect: str,
    model: type,
    rows: list[dict[str, Any]],
    conflict_keys: list[str],
) -> int:
    """Insert *rows* into *model*'s table, skipping rows that already exist.

    - SQLite/PostgreSQL: INSERT ... ON CONFLICT DO NOTHING
    - Others: select existing keys, insert the rest
    """
    if not rows:
        return 0
    if dialect in ("sqlite", "postgresql"):
        return await _insert_ignore_sqlite_pg(session, dialect, model, rows, conflict_keys)
    return await _insert_ignore_generic(session, model, rows, conflict_keys)


async def _insert_ignore_sqlite_pg(
    session: AsyncSession,
    dialect: str,
    model: type,
    rows: list[dict[str, Any]],
    conflict_keys: list[str],
) -> int:
    from sqlalchemy.dialects import sqlite as sqlite_dialect

    dialect_module = sqlite_dialect
    if dialect == "postgresql":
        from sqlalchemy.dialects import postgresql as pg_dialect

        dialect_module = pg_dialect

    total = 0
    for chunk in batched(rows):
        stmt = dialect_module.insert(model).values(chunk)
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_keys)
        result = await session.execute(stmt)
        total += max(result.rowcount or 0, 0)  # type: ignore[attr-defined]
    return total


async def _insert_ignore_generic(
    session: AsyncSession,
    model: type,
    rows: list[dict[str, Any]],
    conflict_keys: list[str],
) -> int:
    columns = [getattr(model, k) for k in conflict_keys]
    total = 0
    for chunk in batched(rows):
        wanted = [tuple(r[k] for k in conflict_keys) for r in chunk]
        result = await session.execute(select(*columns).where(tuple_(*columns).in_(wanted)))
        existing = {tuple(row) for row in result.all()}
        for values, row in zip(wanted, chunk, strict=True):
            if values in existing:
                continue
            session.add(model(**row))
            existing.add(values)
            total += 1
    await session.flush()
    return total
