"""CacheCoherencyLayer — lookaside cache with namespaced keys and TTL bounds.

The cache is a performance layer only.  Backend failures are logged and
degrade to a miss (reads) or a no-op (writes, invalidations); the
relational store stays the source of truth.

Key namespaces (``CacheKeys``)::

    files:{owner}:{parent|root}:{sort}:{order}   child listings
    files:{owner}:@starred|@shared|@trash:...     owner-wide listings
    search:{owner}:{hash}:{limit}                 search results
    folder:{owner}:{id}:size                      computed folder sizes
    share:link:{owner}:{file}                     token for a shared root
    share:token:{token}                           resolved share root
    share:folder:{token}:{folder|root}            share-scoped listings
    share:check:{token}:{file}                    membership checks
    app:settings                                  system settings row
    gen:{scope}                                   generation stamps (``CacheScopes``)
"""

from __future__ import annotations

import hashlib
import logging
import math
import pickle
import secrets
import time
from typing import TYPE_CHECKING, Any

from .utils import ensure_utc, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

    from redis.asyncio import Redis

    from .protocol import CacheBackend

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300
"""Seconds an entry lives unless the caller asks for less."""

LISTING_TTL = 60
"""Shorter TTL for listings, which change often."""

GENERATION_TTL = 3600
"""Generation stamps must outlive any read that could race a writer."""

Stamp = tuple[str, Any]


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


def ttl_for_expiry(
    default_ttl: float,
    expires_at: datetime | None,
    now: datetime | None = None,
) -> int | None:
    """TTL for an entry describing an object that itself expires at *expires_at*.

    Returns ``min(default_ttl, seconds_until_expiry)`` rounded down to
    whole seconds with a floor of one second.  Returns ``None`` when the
    object expires within the next second (or already has), meaning the
    entry must not be cached at all; caching it for the one-second floor
    would outlive the object.
    """
    ttl = math.floor(default_ttl)
    exp = ensure_utc(expires_at)
    if exp is None:
        return max(1, ttl)
    remaining = math.floor((exp - (now or utcnow())).total_seconds())
    if remaining < 1:
        return None
    return max(1, min(ttl, remaining))


class CacheKeys:
    """Deterministic cache key builders."""

    @staticmethod
    def files(owner_id: str, parent_id: str | None, sort_by: str, order: str) -> str:
        return f"files:{owner_id}:{parent_id or 'root'}:{sort_by}:{order}"

    @staticmethod
    def starred(owner_id: str, sort_by: str, order: str) -> str:
        return f"files:{owner_id}:@starred:{sort_by}:{order}"

    @staticmethod
    def shared(owner_id: str, sort_by: str, order: str) -> str:
        return f"files:{owner_id}:@shared:{sort_by}:{order}"

    @staticmethod
    def trash(owner_id: str, sort_by: str, order: str) -> str:
        return f"files:{owner_id}:@trash:{sort_by}:{order}"

    @staticmethod
    def search(owner_id: str, query: str, limit: int) -> str:
        # Hashed so arbitrary user input never lands in the key itself.
        digest = hashlib.sha256(query.lower().strip().encode()).hexdigest()[:16]
        return f"search:{owner_id}:{digest}:{limit}"

    @staticmethod
    def folder_size(owner_id: str, folder_id: str) -> str:
        return f"folder:{owner_id}:{folder_id}:size"

    @staticmethod
    def share_link(owner_id: str, file_id: str) -> str:
        return f"share:link:{owner_id}:{file_id}"

    @staticmethod
    def share_by_token(token: str) -> str:
        return f"share:token:{token}"

    @staticmethod
    def share_folder(token: str, folder_id: str | None) -> str:
        return f"share:folder:{token}:{folder_id or 'root'}"

    @staticmethod
    def share_check(token: str, file_id: str) -> str:
        return f"share:check:{token}:{file_id}"

    @staticmethod
    def system_settings() -> str:
        return "app:settings"

    @staticmethod
    def generation(scope: str) -> str:
        return f"gen:{scope}"


class CacheScopes:
    """Generation scopes, one per group of keys a single invalidation drops."""

    @staticmethod
    def files(owner_id: str) -> str:
        return f"files:{owner_id}"

    @staticmethod
    def share(token: str) -> str:
        return f"share:{token}"

    @staticmethod
    def links(owner_id: str) -> str:
        return f"links:{owner_id}"

    @staticmethod
    def settings() -> str:
        return "settings"


class MemoryCacheBackend:
    """Process-local TTL cache.  Implements ``CacheBackend``.

    *clock* returns monotonic seconds and can be swapped in tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def _live(self, key: str) -> tuple[Any, float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry[1]:
            self._entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Any:
        entry = self._live(key)
        return MISS if entry is None else entry[0]

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        hits: dict[str, Any] = {}
        for key in keys:
            entry = self._live(key)
            if entry is not None:
                hits[key] = entry[0]
        return hits

    async def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def close(self) -> None:
        self._entries.clear()

    def remaining_ttl(self, key: str) -> float | None:
        """Seconds until *key* expires, or ``None`` if absent."""
        entry = self._live(key)
        if entry is None:
            return None
        return entry[1] - self._clock()

    def __len__(self) -> int:
        return len(self._entries)


def _glob_escape(text: str) -> str:
    return "".join("\\" + ch if ch in "*?[]\\" else ch for ch in text)


class RedisCacheBackend:
    """Shared cache on a ``redis.asyncio`` client.  Implements ``CacheBackend``.

    Entries are pickled, so only point this at a Redis the deployment
    trusts.  Every key is stored under *namespace*, which lets several
    canopy instances (or other applications) share one database.
    Prefix invalidation walks ``SCAN``, never ``KEYS``.
    """

    def __init__(
        self,
        client: Redis,
        *,
        namespace: str = "canopy:",
        scan_count: int = 500,
    ) -> None:
        self._client = client
        self.namespace = namespace
        self.scan_count = scan_count

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisCacheBackend:
        """Build a backend on a fresh client for *url* (``redis://host:port/db``)."""
        from redis.asyncio import Redis

        return cls(Redis.from_url(url), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    async def get(self, key: str) -> Any:
        raw = await self._client.get(self._key(key))
        return MISS if raw is None else pickle.loads(raw)

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        raws = await self._client.mget([self._key(k) for k in keys])
        return {k: pickle.loads(raw) for k, raw in zip(keys, raws) if raw is not None}

    async def set(self, key: str, value: Any, ttl: float) -> None:
        # Whole seconds, rounded down so the entry never outlives its bound.
        await self._client.set(
            self._key(key), pickle.dumps(value), ex=max(1, math.floor(ttl))
        )

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._key(key)))

    async def delete_prefix(self, prefix: str) -> int:
        pattern = _glob_escape(self._key(prefix)) + "*"
        doomed = [k async for k in self._client.scan_iter(match=pattern, count=self.scan_count)]
        removed = 0
        for start in range(0, len(doomed), self.scan_count):
            removed += await self._client.delete(*doomed[start : start + self.scan_count])
        return removed

    async def close(self) -> None:
        await self._client.aclose()


class CacheCoherencyLayer:
    """Failure-tolerant facade over a ``CacheBackend``.

    Writers call the ``invalidate_*`` helpers after committing, before
    returning success.  Readers that get ``MISS`` take a ``stamp`` of the
    key's scope, query the store, and ``set`` exactly what they fetched
    under that stamp.  Every invalidation bumps its scope first, so a
    fill whose read overlapped a commit is dropped instead of cached.
    The check and the write are not atomic; the remaining window is a
    few cache round trips wide and still bounded by the entry's TTL.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        default_ttl: float = DEFAULT_TTL,
        listing_ttl: float = LISTING_TTL,
    ) -> None:
        self.backend: CacheBackend = backend if backend is not None else MemoryCacheBackend()
        self.default_ttl = default_ttl
        self.listing_ttl = listing_ttl

    async def get(self, key: str) -> Any:
        try:
            return await self.backend.get(key)
        except Exception:
            logger.warning("Cache read failed for %s", key, exc_info=True)
            return MISS

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        try:
            return await self.backend.get_many(keys)
        except Exception:
            logger.warning("Cache batch read failed for %d keys", len(keys), exc_info=True)
            return {}

    # ------------------------------------------------------------------
    # Generations
    # ------------------------------------------------------------------

    async def stamp(self, scope: str) -> Stamp:
        """Capture the generation of *scope* before reading the store for a fill."""
        return scope, await self.get(CacheKeys.generation(scope))

    async def bump(self, scope: str) -> None:
        """Start a new generation of *scope*, refusing fills stamped before it."""
        await self.set(CacheKeys.generation(scope), secrets.token_hex(8), GENERATION_TTL)

    async def _is_current(self, stamp: Stamp) -> bool:
        scope, seen = stamp
        return await self.get(CacheKeys.generation(scope)) == seen

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        *,
        stamp: Stamp | None = None,
    ) -> bool:
        """Store *value*.  A ``ttl`` below one second is refused.

        With *stamp*, the write is skipped when the scope moved to a new
        generation since the stamp was taken: a writer committed while
        this value was being read, so it may already be stale.
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl < 1:
            return False
        if stamp is not None and not await self._is_current(stamp):
            logger.debug("Skipping stale fill of %s", key)
            return False
        try:
            await self.backend.set(key, value, ttl)
        except Exception:
            logger.warning("Cache write failed for %s", key, exc_info=True)
            return False
        return True

    async def set_bounded(
        self,
        key: str,
        value: Any,
        expires_at: datetime | None,
        *,
        stamp: Stamp | None = None,
    ) -> bool:
        """Store *value* with a TTL that cannot outlive *expires_at*."""
        ttl = ttl_for_expiry(self.default_ttl, expires_at)
        if ttl is None:
            return False
        return await self.set(key, value, ttl, stamp=stamp)

    async def invalidate(self, key: str) -> bool:
        try:
            return await self.backend.delete(key)
        except Exception:
            logger.warning("Cache invalidate failed for %s", key, exc_info=True)
            return False

    async def invalidate_pattern(self, prefix: str) -> int:
        try:
            return await self.backend.delete_prefix(prefix)
        except Exception:
            logger.warning("Cache invalidate failed for prefix %s", prefix, exc_info=True)
            return 0

    async def invalidate_file_cache(self, owner_id: str) -> int:
        """Drop every listing, search and folder-size entry of *owner_id*."""
        await self.bump(CacheScopes.files(owner_id))
        total = 0
        for prefix in (f"files:{owner_id}:", f"search:{owner_id}:", f"folder:{owner_id}:"):
            total += await self.invalidate_pattern(prefix)
        return total

    async def invalidate_share_cache(
        self,
        token: str | None = None,
        owner_id: str | None = None,
    ) -> int:
        """Drop everything a reader could have cached about *token* / *owner_id*'s links."""
        total = 0
        if token:
            await self.bump(CacheScopes.share(token))
            if await self.invalidate(CacheKeys.share_by_token(token)):
                total += 1
            total += await self.invalidate_pattern(f"share:folder:{token}:")
            total += await self.invalidate_pattern(f"share:check:{token}:")
        if owner_id:
            await self.bump(CacheScopes.links(owner_id))
            total += await self.invalidate_pattern(f"share:link:{owner_id}:")
        return total

    async def invalidate_system_settings(self) -> bool:
        await self.bump(CacheScopes.settings())
        return await self.invalidate(CacheKeys.system_settings())

    async def close(self) -> None:
        try:
            await self.backend.close()
        except Exception:
            logger.warning("Cache backend close failed", exc_info=True)
