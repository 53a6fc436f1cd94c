"""Value types returned by the file store and share registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime


@dataclass(frozen=True, slots=True)
class FileInfo:
    """Detached, immutable snapshot of a file or folder row.

    Safe to hand to callers and to keep in the cache.
    """

    id: str
    name: str
    kind: str
    owner_id: str
    parent_id: str | None = None
    size: int | None = None
    mime_type: str | None = None
    storage_ref: str | None = None
    starred: bool = False
    shared: bool = False
    created_at: datetime | None = None
    modified_at: datetime | None = None
    deleted_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def is_folder(self) -> bool:
        return self.kind == "folder"


@dataclass(frozen=True, slots=True)
class ShareResolution:
    """Result of resolving a share token.

    ``node`` is ``None`` whenever ``expired`` is true, so expired content
    can never be served by mistake.
    """

    token: str
    expired: bool
    node: FileInfo | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ShareOutcome:
    """Result of ``create_or_extend`` for a single root."""

    token: str
    created: bool
    member_count: int


@dataclass
class DeleteResult:
    """Result of a permanent delete."""

    deleted_ids: list[str] = field(default_factory=list)
    released_refs: list[str] = field(default_factory=list)
    revoked_tokens: list[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return len(self.deleted_ids)


@dataclass
class SweepResult:
    """Result of an expired-share sweep."""

    tokens: list[str] = field(default_factory=list)
    unshared_ids: list[str] = field(default_factory=list)
    owners: set[str] = field(default_factory=set)

    @property
    def count(self) -> int:
        return len(self.tokens)
