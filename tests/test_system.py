"""Tests for SystemSettingsService."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from canopy.fs.exceptions import PermissionDeniedError
from canopy.system import SettingsSnapshot, SystemSettingsService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from canopy.fs.cache import CacheCoherencyLayer


@pytest.fixture
def system(cache: CacheCoherencyLayer) -> SystemSettingsService:
    return SystemSettingsService(cache)


class TestDefaults:
    async def test_missing_row_reads_as_defaults(
        self, system: SystemSettingsService, async_session: AsyncSession
    ):
        assert await system.get(async_session) == SettingsSnapshot()
        assert await system.get_signup_enabled(async_session)

    async def test_ensure_row_is_idempotent(
        self, system: SystemSettingsService, async_session: AsyncSession
    ):
        await system.ensure_row(async_session)
        await system.ensure_row(async_session)
        assert (await system.get(async_session)).admin_user_id is None


class TestClaimAdmin:
    async def test_first_writer_wins(
        self, system: SystemSettingsService, async_session: AsyncSession
    ):
        assert await system.claim_admin(async_session, "alice")
        assert not await system.claim_admin(async_session, "bob")
        assert await system.claim_admin(async_session, "alice")
        assert await system.is_admin(async_session, "alice")
        assert not await system.is_admin(async_session, "bob")

    async def test_snapshot_is_cached(
        self,
        system: SystemSettingsService,
        async_session: AsyncSession,
        cache: CacheCoherencyLayer,
    ):
        assert not await system.is_admin(async_session, "alice")
        await system.claim_admin(async_session, "alice")
        # Stale until the writer invalidates.
        assert not await system.is_admin(async_session, "alice")
        await cache.invalidate_system_settings()
        assert await system.is_admin(async_session, "alice")


class TestSignupToggle:
    async def test_admin_can_toggle(
        self, system: SystemSettingsService, async_session: AsyncSession
    ):
        await system.claim_admin(async_session, "alice")
        await system.set_signup_enabled(async_session, False, "alice")
        assert not await system.get_signup_enabled(async_session)

    async def test_non_admin_denied(
        self, system: SystemSettingsService, async_session: AsyncSession
    ):
        await system.claim_admin(async_session, "alice")
        with pytest.raises(PermissionDeniedError):
            await system.set_signup_enabled(async_session, False, "bob")

    async def test_denied_without_admin(
        self, system: SystemSettingsService, async_session: AsyncSession
    ):
        with pytest.raises(PermissionDeniedError):
            await system.set_signup_enabled(async_session, False, "alice")
        assert await system.get_signup_enabled(async_session)
