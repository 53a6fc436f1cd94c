"""SystemSettings model — the single-row system settings aggregate."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

SYSTEM_SETTINGS_ID = "system"


class SystemSettings(SQLModel, table=True):
    """Exactly one row, keyed ``"system"``."""

    __tablename__ = "canopy_system_settings"

    id: str = Field(default=SYSTEM_SETTINGS_ID, primary_key=True)
    admin_user_id: str | None = Field(default=None)
    signup_enabled: bool = Field(default=True)
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
