"""FileNode model — one row per file or folder in a user's tree.

Provides ``FileNodeBase`` (non-table) and ``FileNode`` (concrete table).
Subclass ``FileNodeBase`` with ``table=True`` and a custom ``__tablename__``
to use a different table name per backend.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index
from sqlmodel import Field, SQLModel

FILE = "file"
FOLDER = "folder"


class FileNodeBase(SQLModel):
    """Base fields for a file or folder. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str
    kind: str = Field(default=FILE)
    size: int | None = Field(default=None, sa_type=BigInteger)
    mime_type: str | None = Field(default=None)
    storage_ref: str | None = Field(default=None)
    owner_id: str = Field(index=True)
    parent_id: str | None = Field(default=None, index=True)
    starred: bool = Field(default=False)
    shared: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
    modified_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),
    )
    deleted_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),
    )

    @property
    def is_folder(self) -> bool:
        return self.kind == FOLDER


class FileNode(FileNodeBase, table=True):
    """Default node table — ``canopy_files``."""

    __tablename__ = "canopy_files"
    __table_args__ = (
        CheckConstraint("kind IN ('file', 'folder')", name="ck_canopy_files_kind"),
        Index("ix_canopy_files_owner_parent", "owner_id", "parent_id"),
    )
