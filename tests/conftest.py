"""Shared fixtures for canopy tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import canopy.models  # noqa: F401  (registers tables on SQLModel.metadata)
from canopy._canopy_async import CanopyAsync
from canopy.config import CanopySettings
from canopy.fs.cache import CacheCoherencyLayer, MemoryCacheBackend
from canopy.fs.file_store import FileStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine


class FakeClock:
    """Monotonic clock for ``MemoryCacheBackend`` that only moves when told."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAuditSink:
    """``AuditSink`` that keeps every record in memory."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, str, dict]] = []

    async def record(self, event_type, outcome, resource_ref, metadata) -> None:
        self.records.append((event_type, outcome, resource_ref, dict(metadata)))

    def types(self, outcome: str | None = None) -> list[str]:
        return [r[0] for r in self.records if outcome is None or r[1] == outcome]


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Async SQLModel session on the in-memory engine."""
    factory = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_backend(clock: FakeClock) -> MemoryCacheBackend:
    return MemoryCacheBackend(clock=clock)


@pytest.fixture
def cache(cache_backend: MemoryCacheBackend) -> CacheCoherencyLayer:
    return CacheCoherencyLayer(cache_backend)


@pytest.fixture
def store(cache: CacheCoherencyLayer) -> FileStore:
    return FileStore(cache=cache)


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def settings() -> CanopySettings:
    return CanopySettings(database_url="sqlite+aiosqlite://", statement_timeout=5.0)


@pytest.fixture
async def canopy(
    async_engine: AsyncEngine,
    settings: CanopySettings,
    cache_backend: MemoryCacheBackend,
    audit_sink: RecordingAuditSink,
) -> AsyncIterator[CanopyAsync]:
    """Facade over the shared in-memory engine, with a recording audit sink."""
    c = CanopyAsync(
        settings=settings,
        engine=async_engine,
        cache_backend=cache_backend,
        audit_sink=audit_sink,
    )
    await c.open()
    yield c
    await c.close()
