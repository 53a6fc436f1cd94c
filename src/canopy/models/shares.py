"""ShareLink and ShareLinkFile models — tokenized public links over a subtree.

``ShareLink.id`` *is* the public token.  ``ShareLinkFile`` is the
materialized closure: one row per node reachable under a token.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class ShareLinkBase(SQLModel):
    """Base fields for a share link. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(primary_key=True)
    file_id: str = Field(index=True)
    user_id: str = Field(index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    expires_at: datetime | None = Field(
        default=None,
        index=True,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class ShareLink(ShareLinkBase, table=True):
    """Default share link table — ``canopy_share_links``."""

    __tablename__ = "canopy_share_links"
    __table_args__ = (
        UniqueConstraint("file_id", "user_id", name="uq_canopy_share_links_file_user"),
    )


class ShareLinkFileBase(SQLModel):
    """Membership row: *file_id* is reachable under share *share_id*."""

    share_id: str = Field(primary_key=True)
    file_id: str = Field(primary_key=True, index=True)


class ShareLinkFile(ShareLinkFileBase, table=True):
    """Default membership table — ``canopy_share_link_files``."""

    __tablename__ = "canopy_share_link_files"
