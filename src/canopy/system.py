"""SystemSettingsService — the first-user-becomes-admin row and the signup toggle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import update
from sqlmodel import select

from canopy.fs.cache import MISS, CacheKeys, CacheScopes
from canopy.fs.dialect import insert_ignore
from canopy.fs.exceptions import PermissionDeniedError
from canopy.fs.utils import utcnow
from canopy.models.settings import SYSTEM_SETTINGS_ID, SystemSettings

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from canopy.fs.cache import CacheCoherencyLayer

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SettingsSnapshot:
    admin_user_id: str | None = None
    signup_enabled: bool = True


class SystemSettingsService:
    """Reads and conditionally updates the single ``"system"`` row.

    Every write is one conditional ``UPDATE``, so the "first user wins"
    and "only the admin may toggle" rules hold across processes without
    any application lock.  Flushes but does not commit.
    """

    def __init__(
        self,
        cache: CacheCoherencyLayer,
        *,
        dialect: str = "sqlite",
        model: type[SystemSettings] = SystemSettings,
    ) -> None:
        self._cache = cache
        self._model = model
        self.dialect = dialect

    async def ensure_row(self, session: AsyncSession) -> None:
        await insert_ignore(
            session,
            self.dialect,
            self._model,
            [{"id": SYSTEM_SETTINGS_ID, "signup_enabled": True, "updated_at": utcnow()}],
            conflict_keys=["id"],
        )

    async def get(self, session: AsyncSession) -> SettingsSnapshot:
        key = CacheKeys.system_settings()
        cached = await self._cache.get(key)
        if cached is not MISS:
            return cached
        stamp = await self._cache.stamp(CacheScopes.settings())
        row = await session.get(self._model, SYSTEM_SETTINGS_ID)
        snapshot = (
            SettingsSnapshot()
            if row is None
            else SettingsSnapshot(admin_user_id=row.admin_user_id, signup_enabled=row.signup_enabled)
        )
        await self._cache.set(key, snapshot, stamp=stamp)
        return snapshot

    async def claim_admin(self, session: AsyncSession, user_id: str) -> bool:
        """Make *user_id* the admin iff nobody is yet.  True if they are the admin afterwards."""
        await self.ensure_row(session)
        model = self._model
        result = await session.execute(
            update(model)
            .where(
                model.id == SYSTEM_SETTINGS_ID,
                model.admin_user_id.is_(None),  # type: ignore[union-attr]
            )
            .values(admin_user_id=user_id, updated_at=utcnow())
        )
        if result.rowcount:  # type: ignore[attr-defined]
            logger.info("Admin claimed by %s", user_id)
            await session.flush()
            return True
        current = await session.execute(
            select(model.admin_user_id).where(model.id == SYSTEM_SETTINGS_ID)
        )
        return current.scalar_one_or_none() == user_id

    async def is_admin(self, session: AsyncSession, user_id: str) -> bool:
        snapshot = await self.get(session)
        return snapshot.admin_user_id is not None and snapshot.admin_user_id == user_id

    async def get_signup_enabled(self, session: AsyncSession) -> bool:
        return (await self.get(session)).signup_enabled

    async def set_signup_enabled(self, session: AsyncSession, enabled: bool, user_id: str) -> None:
        """Toggle signup.  ``PermissionDeniedError`` unless *user_id* is the admin."""
        await self.ensure_row(session)
        model = self._model
        result = await session.execute(
            update(model)
            .where(model.id == SYSTEM_SETTINGS_ID, model.admin_user_id == user_id)
            .values(signup_enabled=enabled, updated_at=utcnow())
        )
        if not result.rowcount:  # type: ignore[attr-defined]
            raise PermissionDeniedError("Only the admin may change signup settings")
        await session.flush()
