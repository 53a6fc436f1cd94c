"""CanopyAsync — async facade: lock, transaction, commit, invalidate, audit."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from canopy.config import CanopySettings
from canopy.events import AuditEvent, EventBus, EventType, Outcome, sink_handler
from canopy.fs.cache import CacheCoherencyLayer, RedisCacheBackend
from canopy.fs.dialect import get_dialect
from canopy.fs.exceptions import CanopyError, ConflictError, TransientStoreError
from canopy.fs.file_store import FileStore
from canopy.fs.locks import LockKey, OperationSerializer
from canopy.fs.types import DeleteResult, SweepResult
from canopy.fs.utils import dedupe
from canopy.models.settings import SystemSettings
from canopy.system import SystemSettingsService
from canopy.tasks import PeriodicTask

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncEngine

    from canopy.fs.protocol import AuditSink, BlobStore, CacheBackend
    from canopy.fs.types import FileInfo, ShareResolution

T = TypeVar("T")

logger = logging.getLogger(__name__)


def translate_error(exc: BaseException) -> BaseException:
    """Map driver and timeout failures onto the ``CanopyError`` taxonomy."""
    if isinstance(exc, CanopyError):
        return exc
    # IntegrityError subclasses DBAPIError, so it must be checked first.
    if isinstance(exc, IntegrityError):
        return ConflictError(f"Constraint violated: {exc.orig}")
    if isinstance(exc, (OperationalError, DBAPIError)):
        return TransientStoreError(f"Backing store failure: {exc.orig}")
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientStoreError(f"Backing store unavailable: {exc!r}")
    return exc


class CanopyAsync:
    """Async facade over the file store, share registry and system settings.

    Every mutation runs as: acquire the owner's lock, open a transaction
    bounded by ``statement_timeout``, apply, commit, invalidate the
    owner's cache namespaces, emit an audit event, release.  Reads go
    through the cache without locks and are retried once on
    ``TransientStoreError``.  Mutations are never retried.

    Usage::

        async with CanopyAsync(blob_store=LocalBlobStore("/srv/blobs")) as canopy:
            docs = await canopy.create_folder("u1", "Docs")
            tokens = await canopy.share("u1", [docs.id])
    """

    def __init__(
        self,
        *,
        settings: CanopySettings | None = None,
        engine: AsyncEngine | None = None,
        cache_backend: CacheBackend | None = None,
        blob_store: BlobStore | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._settings = settings or CanopySettings()
        self._closed = False
        self._owns_engine = engine is None
        self._engine = engine or create_async_engine(self._settings.database_url)
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )
        dialect = get_dialect(self._engine)

        # Core subsystems
        if cache_backend is None and self._settings.redis_url:
            cache_backend = RedisCacheBackend.from_url(self._settings.redis_url)
        self._cache = CacheCoherencyLayer(
            cache_backend,
            default_ttl=self._settings.cache_default_ttl,
            listing_ttl=self._settings.listing_cache_ttl,
        )
        self._locks = OperationSerializer()
        self._store = FileStore(
            cache=self._cache,
            blob_store=blob_store,
            dialect=dialect,
            max_depth=self._settings.max_tree_depth,
            closure_strategy=self._settings.closure_strategy,
            token_length=self._settings.share_token_length,
        )
        self._system = SystemSettingsService(self._cache, dialect=dialect)

        self._event_bus = EventBus()
        if audit_sink is not None:
            self._event_bus.register_all(sink_handler(audit_sink))

        # Background maintenance, started explicitly
        self._tasks = [
            PeriodicTask(
                "share-sweep", self._settings.share_sweep_interval, self.sweep_expired_shares
            ),
            PeriodicTask(
                "trash-purge", self._settings.trash_sweep_interval, self.purge_expired_trash
            ),
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Create the canopy tables if they do not exist."""
        self._check_open()
        tables = [
            self._store.file_model,
            self._store.share_model,
            self._store.member_model,
            SystemSettings,
        ]
        async with self._engine.begin() as conn:
            for model in tables:
                await conn.run_sync(
                    lambda c, m=model: m.__table__.create(c, checkfirst=True)  # type: ignore[attr-defined]
                )

    def start_maintenance(self) -> None:
        """Start the periodic share sweep and trash purge on the running loop."""
        self._check_open()
        for task in self._tasks:
            task.start()

    async def stop_maintenance(self) -> None:
        for task in self._tasks:
            await task.stop()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        await self.stop_maintenance()
        self._event_bus.clear()
        await self._cache.close()
        if self._owns_engine:
            await self._engine.dispose()

    async def __aenter__(self) -> CanopyAsync:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("CanopyAsync is closed")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def settings(self) -> CanopySettings:
        return self._settings

    @property
    def store(self) -> FileStore:
        return self._store

    @property
    def cache(self) -> CacheCoherencyLayer:
        return self._cache

    @property
    def locks(self) -> OperationSerializer:
        return self._locks

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def maintenance_tasks(self) -> list[PeriodicTask]:
        return list(self._tasks)

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession]:
        """Yield a session; commit on success, roll back and translate on error."""
        self._check_open()
        session = self._session_factory()
        try:
            async with asyncio.timeout(self._settings.statement_timeout):
                yield session
                await session.commit()
        except Exception as exc:
            await session.rollback()
            translated = translate_error(exc)
            if translated is exc:
                raise
            raise translated from exc
        finally:
            await session.close()

    async def _read(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run a read-only unit of work, retrying once on a transient failure."""
        try:
            async with self._transaction() as session:
                return await fn(session)
        except TransientStoreError:
            logger.warning("Transient store failure on read; retrying once", exc_info=True)
        async with self._transaction() as session:
            return await fn(session)

    async def _mutate(
        self,
        owner_id: str,
        event_type: EventType,
        resource_ref: str,
        fn: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """Run *fn* under the owner's lock in one transaction, then invalidate and audit."""
        tokens: set[str] = set()
        async with self._locks.hold(LockKey.user(owner_id)):
            try:
                async with self._transaction() as session:
                    tokens.update(await self._store.sharing.tokens_for_owner(session, owner_id))
                    result = await fn(session)
                    tokens.update(await self._store.sharing.tokens_for_owner(session, owner_id))
            except Exception as exc:
                await self._invalidate_owner(owner_id, tokens)
                await self._audit(event_type, Outcome.FAILURE, resource_ref, owner_id, exc=exc)
                raise
            await self._invalidate_owner(owner_id, tokens)
        await self._audit(event_type, Outcome.SUCCESS, resource_ref, owner_id)
        return result

    async def _invalidate_owner(self, owner_id: str, tokens: set[str]) -> None:
        await self._cache.invalidate_file_cache(owner_id)
        await self._cache.invalidate_share_cache(owner_id=owner_id)
        for token in sorted(tokens):
            await self._cache.invalidate_share_cache(token=token)

    async def _audit(
        self,
        event_type: EventType,
        outcome: Outcome,
        resource_ref: str,
        user_id: str | None,
        *,
        exc: BaseException | None = None,
        **metadata: Any,
    ) -> None:
        if exc is not None:
            kind = getattr(exc, "kind", None)
            metadata["error"] = kind.value if kind is not None else type(exc).__name__
        await self._event_bus.emit(
            AuditEvent(
                event_type=event_type,
                outcome=outcome,
                resource_ref=resource_ref,
                user_id=user_id,
                metadata=metadata,
            )
        )

    # ------------------------------------------------------------------
    # Tree reads
    # ------------------------------------------------------------------

    async def list_children(
        self,
        owner_id: str,
        parent_id: str | None = None,
        sort_by: str = "modified",
        order: str = "desc",
    ) -> list[FileInfo]:
        return await self._read(
            lambda s: self._store.list_children(s, owner_id, parent_id, sort_by, order)
        )

    async def list_starred(
        self, owner_id: str, sort_by: str = "modified", order: str = "desc"
    ) -> list[FileInfo]:
        return await self._read(lambda s: self._store.list_starred(s, owner_id, sort_by, order))

    async def list_shared(
        self, owner_id: str, sort_by: str = "modified", order: str = "desc"
    ) -> list[FileInfo]:
        return await self._read(lambda s: self._store.list_shared(s, owner_id, sort_by, order))

    async def list_trash(
        self, owner_id: str, sort_by: str = "deleted_at", order: str = "desc"
    ) -> list[FileInfo]:
        return await self._read(lambda s: self._store.list_trash(s, owner_id, sort_by, order))

    async def search(self, owner_id: str, query: str, limit: int | None = None) -> list[FileInfo]:
        limit = limit or self._settings.search_limit
        return await self._read(lambda s: self._store.search(s, owner_id, query, limit))

    async def folder_size(self, owner_id: str, folder_id: str) -> int:
        return await self._read(lambda s: self._store.folder_size(s, owner_id, folder_id))

    async def get_node(self, owner_id: str, file_id: str) -> FileInfo:
        return await self._read(lambda s: self._store.get_node(s, owner_id, file_id))

    async def get_recursive_ids(
        self, owner_id: str, root_ids: list[str], include_deleted: bool = False
    ) -> list[str]:
        return await self._read(
            lambda s: self._store.get_recursive_ids(s, owner_id, root_ids, include_deleted)
        )

    # ------------------------------------------------------------------
    # Tree mutations
    # ------------------------------------------------------------------

    async def create_folder(
        self, owner_id: str, name: str, parent_id: str | None = None
    ) -> FileInfo:
        return await self._mutate(
            owner_id,
            EventType.FOLDER_CREATED,
            parent_id or "root",
            lambda s: self._store.create_folder(s, owner_id, name, parent_id),
        )

    async def create_file(
        self,
        owner_id: str,
        name: str,
        parent_id: str | None = None,
        *,
        size: int | None = None,
        mime_type: str | None = None,
        storage_ref: str | None = None,
    ) -> FileInfo:
        return await self._mutate(
            owner_id,
            EventType.FILE_CREATED,
            parent_id or "root",
            lambda s: self._store.create_file(
                s,
                owner_id,
                name,
                parent_id,
                size=size,
                mime_type=mime_type,
                storage_ref=storage_ref,
            ),
        )

    async def rename(self, owner_id: str, file_id: str, new_name: str) -> FileInfo:
        return await self._mutate(
            owner_id,
            EventType.FILE_RENAMED,
            file_id,
            lambda s: self._store.rename(s, owner_id, file_id, new_name),
        )

    async def move(self, owner_id: str, ids: list[str], new_parent_id: str | None) -> list[str]:
        return await self._mutate(
            owner_id,
            EventType.FILE_MOVED,
            new_parent_id or "root",
            lambda s: self._store.move(s, owner_id, ids, new_parent_id),
        )

    async def copy(
        self, owner_id: str, ids: list[str], new_parent_id: str | None
    ) -> dict[str, str]:
        return await self._mutate(
            owner_id,
            EventType.FILE_COPIED,
            new_parent_id or "root",
            lambda s: self._store.copy(s, owner_id, ids, new_parent_id),
        )

    async def set_starred(self, owner_id: str, ids: list[str], starred: bool) -> list[str]:
        return await self._mutate(
            owner_id,
            EventType.FILE_STARRED,
            ",".join(ids),
            lambda s: self._store.set_starred(s, owner_id, ids, starred),
        )

    async def soft_delete(self, owner_id: str, ids: list[str]) -> list[str]:
        return await self._mutate(
            owner_id,
            EventType.FILE_TRASHED,
            ",".join(ids),
            lambda s: self._store.soft_delete(s, owner_id, ids),
        )

    async def restore(self, owner_id: str, ids: list[str]) -> list[str]:
        return await self._mutate(
            owner_id,
            EventType.FILE_RESTORED,
            ",".join(ids),
            lambda s: self._store.restore(s, owner_id, ids),
        )

    async def permanently_delete(self, owner_id: str, ids: list[str]) -> DeleteResult:
        """Delete rows, links and memberships; release blob content after commit."""
        result = await self._mutate(
            owner_id,
            EventType.FILE_DELETED,
            ",".join(ids),
            lambda s: self._store.permanently_delete(s, owner_id, ids),
        )
        await self._store.release_blobs(result.released_refs)
        return result

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    async def share(
        self,
        owner_id: str,
        ids: list[str],
        expires_at: datetime | None = None,
    ) -> dict[str, str]:
        """Share every root in *ids*; all-or-nothing.  Returns ``{root_id: token}``."""

        async def _share(session: AsyncSession) -> dict[str, str]:
            tokens: dict[str, str] = {}
            for root_id in dedupe(ids):
                outcome = await self._store.sharing.create_or_extend(
                    session, root_id, owner_id, expires_at
                )
                tokens[root_id] = outcome.token
            return tokens

        return await self._mutate(owner_id, EventType.SHARE_CREATED, ",".join(ids), _share)

    async def unshare(self, owner_id: str, ids: list[str]) -> list[str]:
        """Revoke shares rooted at *ids* and drop their closures from every other share.

        Returns the revoked tokens.
        """

        async def _unshare(session: AsyncSession) -> list[str]:
            sharing = self._store.sharing
            revoked: list[str] = []
            for root_id in dedupe(ids):
                token = await sharing.revoke(session, root_id, owner_id)
                if token is not None:
                    revoked.append(token)
            closure = await self._store.metadata.get_recursive_ids(session, ids, owner_id)
            await sharing.remove_files_from_shares(session, closure, owner_id)
            return revoked

        return await self._mutate(owner_id, EventType.SHARE_REVOKED, ",".join(ids), _unshare)

    async def link_parent_share(self, owner_id: str, ids: list[str]) -> dict[str, str]:
        """Add each node to its nearest shared ancestor's link.  Returns ``{id: token}`` for linked ids."""

        async def _link(session: AsyncSession) -> dict[str, str]:
            linked: dict[str, str] = {}
            for file_id in dedupe(ids):
                token = await self._store.sharing.link_to_parent_share(session, file_id, owner_id)
                if token is not None:
                    linked[file_id] = token
            return linked

        return await self._mutate(owner_id, EventType.SHARE_UPDATED, ",".join(ids), _link)

    async def set_share_expiry(
        self,
        owner_id: str,
        root_id: str,
        expires_at: datetime | None,
    ) -> str:
        return await self._mutate(
            owner_id,
            EventType.SHARE_UPDATED,
            root_id,
            lambda s: self._store.sharing.update_expiry(s, root_id, owner_id, expires_at),
        )

    async def get_share_links(self, owner_id: str, ids: list[str]) -> dict[str, str]:
        return await self._read(lambda s: self._store.sharing.get_share_links(s, ids, owner_id))

    async def resolve_share(self, token: str) -> ShareResolution:
        return await self._read(lambda s: self._store.sharing.resolve_by_token(s, token))

    async def is_share_member(self, token: str, file_id: str) -> bool:
        return await self._read(lambda s: self._store.sharing.is_member(s, token, file_id))

    async def share_subtree(self, token: str, root_id: str) -> list[FileInfo]:
        return await self._read(
            lambda s: self._store.sharing.subtree_under_share(s, token, root_id)
        )

    async def list_share_folder(self, token: str, folder_id: str | None = None) -> list[FileInfo]:
        return await self._read(
            lambda s: self._store.sharing.list_share_folder(s, token, folder_id)
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep_expired_shares(self, now: datetime | None = None) -> SweepResult:
        """Delete expired links and recompute ``shared`` against remaining coverage."""
        async with self._locks.hold(LockKey.system("share-sweep")):
            async with self._transaction() as session:
                result = await self._store.sharing.sweep_expired(session, now)
        for token in result.tokens:
            await self._cache.invalidate_share_cache(token=token)
            await self._audit(EventType.SHARE_EXPIRED, Outcome.SUCCESS, token, None)
        for owner_id in sorted(result.owners):
            await self._cache.invalidate_file_cache(owner_id)
            await self._cache.invalidate_share_cache(owner_id=owner_id)
        return result

    async def purge_expired_trash(self, now: datetime | None = None) -> dict[str, DeleteResult]:
        """Permanently delete nodes trashed longer than ``trash_retention_days``."""
        retention = self._settings.trash_retention_days
        expired = await self._read(
            lambda s: self._store.trash.expired_trash(s, retention, now)
        )
        purged: dict[str, DeleteResult] = {}
        for owner_id in sorted(expired):

            async def _purge(session: AsyncSession, owner_id: str = owner_id) -> DeleteResult:
                # Re-read under the lock: items may have been restored meanwhile.
                current = await self._store.trash.expired_trash(session, retention, now)
                ids = current.get(owner_id, [])
                return await self._store.permanently_delete(session, owner_id, ids)

            result = await self._mutate(owner_id, EventType.TRASH_PURGED, owner_id, _purge)
            await self._store.release_blobs(result.released_refs)
            if result.total_deleted:
                purged[owner_id] = result
        return purged

    # ------------------------------------------------------------------
    # System settings
    # ------------------------------------------------------------------

    async def _mutate_settings(
        self,
        user_id: str,
        event_type: EventType,
        fn: Callable[[AsyncSession], Awaitable[T]],
        **metadata: Any,
    ) -> T:
        async with self._locks.hold(LockKey.system("settings")):
            try:
                async with self._transaction() as session:
                    result = await fn(session)
            except Exception as exc:
                await self._cache.invalidate_system_settings()
                await self._audit(event_type, Outcome.FAILURE, "system", user_id, exc=exc, **metadata)
                raise
            await self._cache.invalidate_system_settings()
        await self._audit(event_type, Outcome.SUCCESS, "system", user_id, **metadata)
        return result

    async def claim_admin(self, user_id: str) -> bool:
        """First caller becomes admin.  True if *user_id* is the admin afterwards."""
        return await self._mutate_settings(
            user_id,
            EventType.ADMIN_CLAIMED,
            lambda s: self._system.claim_admin(s, user_id),
        )

    async def is_admin(self, user_id: str) -> bool:
        return await self._read(lambda s: self._system.is_admin(s, user_id))

    async def get_signup_enabled(self) -> bool:
        return await self._read(self._system.get_signup_enabled)

    async def set_signup_enabled(self, enabled: bool, user_id: str) -> None:
        await self._mutate_settings(
            user_id,
            EventType.SIGNUP_TOGGLED,
            lambda s: self._system.set_signup_enabled(s, enabled, user_id),
            enabled=enabled,
        )
