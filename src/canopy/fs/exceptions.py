"""Closed exception hierarchy for the canopy file store.

Every error carries a :class:`ErrorKind` tag.  Callers branch on
``err.kind`` (or the class), never on message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Tag identifying which variant of :class:`CanopyError` was raised."""

    NOT_FOUND = "not_found"
    INVALID_PARENT = "invalid_parent"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    TRANSIENT = "transient"
    PERMISSION_DENIED = "permission_denied"


class CanopyError(Exception):
    """Base exception for all canopy errors."""

    kind: ErrorKind


class NotFoundError(CanopyError):
    """The node is absent, trashed, or owned by someone else.

    The three cases are intentionally indistinguishable.
    """

    kind = ErrorKind.NOT_FOUND


class InvalidParentError(CanopyError):
    """Target parent is missing, not a folder, not owned, or would create a cycle."""

    kind = ErrorKind.INVALID_PARENT


class ConflictError(CanopyError):
    """A uniqueness constraint on a singly-owned resource was violated."""

    kind = ErrorKind.CONFLICT


class ExpiredError(CanopyError):
    """A share link exists but is past its ``expires_at``."""

    kind = ErrorKind.EXPIRED


class TransientStoreError(CanopyError):
    """Backing store or cache I/O failed (connection loss, timeout, etc.)."""

    kind = ErrorKind.TRANSIENT


class PermissionDeniedError(CanopyError):
    """The caller is not allowed to change a system-wide setting."""

    kind = ErrorKind.PERMISSION_DENIED
