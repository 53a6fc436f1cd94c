"""FileStore — per-user tree of files and folders, stateless, sessions per call."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .cache import MISS, CacheCoherencyLayer, CacheKeys, CacheScopes
from .metadata import DEFAULT_MAX_DEPTH, MetadataService, normalize_sort
from .operations import (
    DEFAULT_SEARCH_LIMIT,
    copy,
    create_file,
    create_folder,
    folder_size,
    list_children,
    list_shared,
    list_starred,
    move,
    rename,
    search,
    set_starred,
)
from .sharing import ShareLinkRegistry
from .trash import DEFAULT_RETENTION_DAYS, TrashService
from .utils import DEFAULT_TOKEN_LENGTH

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from canopy.models.files import FileNodeBase
    from canopy.models.shares import ShareLinkBase, ShareLinkFileBase

    from .protocol import BlobStore
    from .types import DeleteResult, FileInfo

logger = logging.getLogger(__name__)


class FileStore:
    """Owner-scoped file tree over SQL — stateless, sessions provided per-operation.

    Holds only configuration (models, dialect, limits) and the composed
    services.  Read methods go through the cache; mutating methods flush
    but never commit, and never touch the cache.  The caller commits and
    then invalidates (see ``CanopyAsync``).

    Every query filters on ``owner_id``.  A node owned by someone else is
    indistinguishable from a missing one.
    """

    def __init__(
        self,
        *,
        cache: CacheCoherencyLayer | None = None,
        blob_store: BlobStore | None = None,
        dialect: str = "sqlite",
        file_model: type[FileNodeBase] | None = None,
        share_model: type[ShareLinkBase] | None = None,
        member_model: type[ShareLinkFileBase] | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        closure_strategy: str = "bfs",
        token_length: int = DEFAULT_TOKEN_LENGTH,
    ) -> None:
        from canopy.models.files import FileNode
        from canopy.models.shares import ShareLink, ShareLinkFile

        fm: type[FileNodeBase] = file_model or FileNode
        sm: type[ShareLinkBase] = share_model or ShareLink
        mm: type[ShareLinkFileBase] = member_model or ShareLinkFile

        self.dialect = dialect
        self.cache = cache if cache is not None else CacheCoherencyLayer()
        self.blob_store = blob_store
        self._file_model = fm
        self._share_model = sm
        self._member_model = mm

        # Composed services
        self.metadata = MetadataService(fm, max_depth=max_depth, closure_strategy=closure_strategy)
        self.sharing = ShareLinkRegistry(
            sm,
            mm,
            fm,
            self.metadata,
            self.cache,
            dialect=dialect,
            token_length=token_length,
        )
        self.trash = TrashService(fm, self.metadata, self.sharing)

    @property
    def file_model(self) -> type[FileNodeBase]:
        return self._file_model

    @property
    def share_model(self) -> type[ShareLinkBase]:
        return self._share_model

    @property
    def member_model(self) -> type[ShareLinkFileBase]:
        return self._member_model

    # ------------------------------------------------------------------
    # Reads (cache-first)
    # ------------------------------------------------------------------

    async def _cached_listing(
        self,
        owner_id: str,
        key: str,
        fetch: Callable[[], Awaitable[list[FileInfo]]],
    ) -> list[FileInfo]:
        cached = await self.cache.get(key)
        if cached is not MISS:
            return list(cached)
        stamp = await self.cache.stamp(CacheScopes.files(owner_id))
        infos = await fetch()
        await self.cache.set(key, tuple(infos), self.cache.listing_ttl, stamp=stamp)
        return infos

    async def list_children(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None = None,
        sort_by: str = "modified",
        order: str = "desc",
    ) -> list[FileInfo]:
        sort_by, order = normalize_sort(sort_by, order)
        return await self._cached_listing(
            owner_id,
            CacheKeys.files(owner_id, parent_id, sort_by, order),
            lambda: list_children(
                session,
                owner_id,
                parent_id,
                sort_by,
                order,
                metadata=self.metadata,
                file_model=self._file_model,
            ),
        )

    async def list_starred(
        self,
        session: AsyncSession,
        owner_id: str,
        sort_by: str = "modified",
        order: str = "desc",
    ) -> list[FileInfo]:
        sort_by, order = normalize_sort(sort_by, order)
        return await self._cached_listing(
            owner_id,
            CacheKeys.starred(owner_id, sort_by, order),
            lambda: list_starred(
                session,
                owner_id,
                sort_by,
                order,
                metadata=self.metadata,
                file_model=self._file_model,
            ),
        )

    async def list_shared(
        self,
        session: AsyncSession,
        owner_id: str,
        sort_by: str = "modified",
        order: str = "desc",
    ) -> list[FileInfo]:
        """Share roots of *owner_id* with their link expiry.

        Not cached: entries carry ``expires_at`` and go stale with time.
        """
        sort_by, order = normalize_sort(sort_by, order)
        return await list_shared(
            session,
            owner_id,
            sort_by,
            order,
            metadata=self.metadata,
            file_model=self._file_model,
            share_model=self._share_model,
        )

    async def list_trash(
        self,
        session: AsyncSession,
        owner_id: str,
        sort_by: str = "deleted_at",
        order: str = "desc",
    ) -> list[FileInfo]:
        sort_by, order = normalize_sort(sort_by, order)
        return await self._cached_listing(
            owner_id,
            CacheKeys.trash(owner_id, sort_by, order),
            lambda: self.trash.list_trash(session, owner_id, sort_by, order),
        )

    async def search(
        self,
        session: AsyncSession,
        owner_id: str,
        query: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[FileInfo]:
        return await self._cached_listing(
            owner_id,
            CacheKeys.search(owner_id, query, limit),
            lambda: search(session, owner_id, query, limit, file_model=self._file_model),
        )

    async def folder_size(self, session: AsyncSession, owner_id: str, folder_id: str) -> int:
        key = CacheKeys.folder_size(owner_id, folder_id)
        cached = await self.cache.get(key)
        if cached is not MISS:
            return int(cached)
        stamp = await self.cache.stamp(CacheScopes.files(owner_id))
        size = await folder_size(session, owner_id, folder_id, metadata=self.metadata)
        await self.cache.set(key, size, stamp=stamp)
        return size

    async def get_node(self, session: AsyncSession, owner_id: str, file_id: str) -> FileInfo:
        """Snapshot of a live node; ``NotFoundError`` otherwise."""
        node = await self.metadata.require_node(session, file_id, owner_id)
        return MetadataService.node_to_info(node)

    async def get_recursive_ids(
        self,
        session: AsyncSession,
        owner_id: str,
        root_ids: list[str],
        include_deleted: bool = False,
    ) -> list[str]:
        return await self.metadata.get_recursive_ids(
            session, root_ids, owner_id, include_deleted=include_deleted
        )

    # ------------------------------------------------------------------
    # Mutations (flush only)
    # ------------------------------------------------------------------

    async def create_folder(
        self,
        session: AsyncSession,
        owner_id: str,
        name: str,
        parent_id: str | None = None,
    ) -> FileInfo:
        return await create_folder(
            session,
            owner_id,
            name,
            parent_id,
            metadata=self.metadata,
            file_model=self._file_model,
        )

    async def create_file(
        self,
        session: AsyncSession,
        owner_id: str,
        name: str,
        parent_id: str | None = None,
        *,
        size: int | None = None,
        mime_type: str | None = None,
        storage_ref: str | None = None,
    ) -> FileInfo:
        return await create_file(
            session,
            owner_id,
            name,
            parent_id,
            size=size,
            mime_type=mime_type,
            storage_ref=storage_ref,
            metadata=self.metadata,
            file_model=self._file_model,
        )

    async def rename(
        self,
        session: AsyncSession,
        owner_id: str,
        file_id: str,
        new_name: str,
    ) -> FileInfo:
        return await rename(session, owner_id, file_id, new_name, metadata=self.metadata)

    async def set_starred(
        self,
        session: AsyncSession,
        owner_id: str,
        ids: list[str],
        starred: bool,
    ) -> list[str]:
        return await set_starred(session, owner_id, ids, starred, metadata=self.metadata)

    async def move(
        self,
        session: AsyncSession,
        owner_id: str,
        ids: list[str],
        new_parent_id: str | None,
    ) -> list[str]:
        return await move(
            session,
            owner_id,
            ids,
            new_parent_id,
            metadata=self.metadata,
            sharing=self.sharing,
        )

    async def copy(
        self,
        session: AsyncSession,
        owner_id: str,
        ids: list[str],
        new_parent_id: str | None,
    ) -> dict[str, str]:
        return await copy(
            session,
            owner_id,
            ids,
            new_parent_id,
            metadata=self.metadata,
            file_model=self._file_model,
            blob_store=self.blob_store,
        )

    async def soft_delete(self, session: AsyncSession, owner_id: str, ids: list[str]) -> list[str]:
        return await self.trash.soft_delete(session, ids, owner_id)

    async def restore(self, session: AsyncSession, owner_id: str, ids: list[str]) -> list[str]:
        return await self.trash.restore(session, ids, owner_id)

    async def permanently_delete(
        self,
        session: AsyncSession,
        owner_id: str,
        ids: list[str],
    ) -> DeleteResult:
        """Delete rows and cascade.  Call ``release_blobs`` after committing."""
        return await self.trash.permanently_delete(session, ids, owner_id)

    async def purge_expired_trash(
        self,
        session: AsyncSession,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        now: datetime | None = None,
    ) -> dict[str, DeleteResult]:
        return await self.trash.purge_expired_trash(session, retention_days, now)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    async def release_blobs(self, refs: list[str]) -> int:
        """Best-effort release of blob content after a committed delete.

        Failures are logged; the rows are already gone.
        """
        if self.blob_store is None:
            return 0
        released = 0
        for ref in refs:
            try:
                await self.blob_store.delete(ref)
                released += 1
            except Exception:
                logger.warning("Failed to release blob %s", ref, exc_info=True)
        return released
