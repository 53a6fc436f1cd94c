"""Collaborator protocols — runtime-checkable interfaces the core calls into.

The core never implements byte storage, audit persistence, or a cache
server itself.  It talks to these three seams, and the facade receives
concrete implementations at construction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


@runtime_checkable
class CacheBackend(Protocol):
    """Key/value store with per-entry TTL.

    ``get`` returns the module-level ``MISS`` sentinel from
    :mod:`canopy.fs.cache` for absent or expired keys, so ``None`` is a
    legitimate cached value.
    """

    async def get(self, key: str) -> Any: ...

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return only the keys that were hits."""
        ...

    async def set(self, key: str, value: Any, ttl: float) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def close(self) -> None: ...


@runtime_checkable
class BlobStore(Protocol):
    """Opaque content store addressed by ``storage_ref`` strings."""

    async def copy(self, ref: str) -> str:
        """Duplicate the content at *ref* and return the new reference."""
        ...

    async def delete(self, ref: str) -> None:
        """Release the content at *ref*.  Missing content is not an error."""
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Fire-and-forget audit event recorder."""

    async def record(
        self,
        event_type: str,
        outcome: str,
        resource_ref: str,
        metadata: Mapping[str, Any],
    ) -> None: ...
