"""Standalone orchestration functions for tree operations.

Each function takes a session plus the services it needs as keyword
parameters.  Nothing here commits; callers own the transaction.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func
from sqlmodel import select

from .exceptions import InvalidParentError, NotFoundError
from .metadata import MetadataService
from .utils import require_valid_name, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from canopy.models.files import FileNodeBase
    from canopy.models.shares import ShareLinkBase

    from .protocol import BlobStore
    from .sharing import ShareLinkRegistry
    from .types import FileInfo

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 100


# ----------------------------------------------------------------------
# Listings
# ----------------------------------------------------------------------


async def list_children(
    session: AsyncSession,
    owner_id: str,
    parent_id: str | None,
    sort_by: str,
    order: str,
    *,
    metadata: MetadataService,
    file_model: type[FileNodeBase],
) -> list[FileInfo]:
    """Non-trashed children of *parent_id* (``None`` for the root level)."""
    if parent_id is not None:
        parent = await metadata.get_node(session, parent_id, owner_id)
        if parent is None or not parent.is_folder:
            raise NotFoundError(f"Folder not found: {parent_id}")

    model = file_model
    query = select(model).where(
        model.owner_id == owner_id,
        model.deleted_at.is_(None),  # type: ignore[unresolved-attribute]
    )
    if parent_id is None:
        query = query.where(model.parent_id.is_(None))  # type: ignore[union-attr]
    else:
        query = query.where(model.parent_id == parent_id)
    return await _sorted_infos(session, query, owner_id, sort_by, order, metadata=metadata)


async def list_starred(
    session: AsyncSession,
    owner_id: str,
    sort_by: str,
    order: str,
    *,
    metadata: MetadataService,
    file_model: type[FileNodeBase],
) -> list[FileInfo]:
    model = file_model
    query = select(model).where(
        model.owner_id == owner_id,
        model.starred.is_(True),  # type: ignore[attr-defined]
        model.deleted_at.is_(None),  # type: ignore[unresolved-attribute]
    )
    return await _sorted_infos(session, query, owner_id, sort_by, order, metadata=metadata)


async def list_shared(
    session: AsyncSession,
    owner_id: str,
    sort_by: str,
    order: str,
    *,
    metadata: MetadataService,
    file_model: type[FileNodeBase],
    share_model: type[ShareLinkBase],
) -> list[FileInfo]:
    """Share roots of *owner_id*, each carrying its link's ``expires_at``."""
    model = file_model
    share = share_model
    result = await session.execute(
        select(model, share.expires_at)
        .join(share, share.file_id == model.id)
        .where(
            share.user_id == owner_id,
            model.owner_id == owner_id,
            model.deleted_at.is_(None),  # type: ignore[unresolved-attribute]
        )
        .order_by(*metadata.order_by(sort_by if sort_by != "size" else "name", order))
    )
    infos = [MetadataService.node_to_info(n, expires_at) for n, expires_at in result.all()]
    if sort_by == "size":
        infos = await metadata.sort_by_size(session, infos, owner_id, order)
    return infos


async def _sorted_infos(
    session: AsyncSession,
    query: Any,
    owner_id: str,
    sort_by: str,
    order: str,
    *,
    metadata: MetadataService,
) -> list[FileInfo]:
    if sort_by == "size":
        result = await session.execute(query)
        infos = [MetadataService.node_to_info(n) for n in result.scalars().all()]
        return await metadata.sort_by_size(session, infos, owner_id, order)
    result = await session.execute(query.order_by(*metadata.order_by(sort_by, order)))
    return [MetadataService.node_to_info(n) for n in result.scalars().all()]


async def search(
    session: AsyncSession,
    owner_id: str,
    query: str,
    limit: int,
    *,
    file_model: type[FileNodeBase],
) -> list[FileInfo]:
    """Case-insensitive substring search over non-trashed names.

    Exact matches rank first, then prefix matches, then the rest; ties
    are broken by name.
    """
    needle = query.strip().lower()
    if not needle or limit < 1:
        return []
    model = file_model
    lowered = func.lower(model.name)
    rank = case(
        (lowered == needle, 0),
        (lowered.startswith(needle, autoescape=True), 1),
        else_=2,
    )
    result = await session.execute(
        select(model)
        .where(
            model.owner_id == owner_id,
            model.deleted_at.is_(None),  # type: ignore[unresolved-attribute]
            lowered.contains(needle, autoescape=True),
        )
        .order_by(rank, model.name, model.id)
        .limit(limit)
    )
    return [MetadataService.node_to_info(n) for n in result.scalars().all()]


# ----------------------------------------------------------------------
# Create / rename / star
# ----------------------------------------------------------------------


async def create_folder(
    session: AsyncSession,
    owner_id: str,
    name: str,
    parent_id: str | None,
    *,
    metadata: MetadataService,
    file_model: type[FileNodeBase],
) -> FileInfo:
    """Create a folder under *parent_id* (``None`` for the root level)."""
    require_valid_name(name)
    await metadata.require_folder(session, parent_id, owner_id)
    folder = file_model(name=name, kind="folder", owner_id=owner_id, parent_id=parent_id)
    session.add(folder)
    await session.flush()
    return MetadataService.node_to_info(folder)


async def create_file(
    session: AsyncSession,
    owner_id: str,
    name: str,
    parent_id: str | None,
    *,
    size: int | None = None,
    mime_type: str | None = None,
    storage_ref: str | None = None,
    metadata: MetadataService,
    file_model: type[FileNodeBase],
) -> FileInfo:
    """Record a file whose content already lives in the blob store at *storage_ref*."""
    require_valid_name(name)
    if size is not None and size < 0:
        raise ValueError(f"Invalid file size: {size}")
    await metadata.require_folder(session, parent_id, owner_id)
    node = file_model(
        name=name,
        kind="file",
        owner_id=owner_id,
        parent_id=parent_id,
        size=size,
        mime_type=mime_type,
        storage_ref=storage_ref,
    )
    session.add(node)
    await session.flush()
    return MetadataService.node_to_info(node)


async def rename(
    session: AsyncSession,
    owner_id: str,
    file_id: str,
    new_name: str,
    *,
    metadata: MetadataService,
) -> FileInfo:
    require_valid_name(new_name)
    node = await metadata.require_node(session, file_id, owner_id)
    node.name = new_name
    node.modified_at = utcnow()
    await session.flush()
    return MetadataService.node_to_info(node)


async def set_starred(
    session: AsyncSession,
    owner_id: str,
    ids: list[str],
    starred: bool,
    *,
    metadata: MetadataService,
) -> list[str]:
    """Set the star flag on the owned, non-trashed nodes among *ids*."""
    nodes = await metadata.get_nodes(session, ids, owner_id)
    for node in nodes:
        node.starred = starred
    await session.flush()
    return [n.id for n in nodes]


# ----------------------------------------------------------------------
# Move / copy
# ----------------------------------------------------------------------


async def move(
    session: AsyncSession,
    owner_id: str,
    ids: list[str],
    new_parent_id: str | None,
    *,
    metadata: MetadataService,
    sharing: ShareLinkRegistry,
) -> list[str]:
    """Reparent the owned, non-trashed nodes among *ids*.

    Raises ``InvalidParentError`` if the target is not a live folder of
    *owner_id* or lies inside the closure of any moved node.  Memberships
    whose share root no longer covers a moved node are pruned.
    """
    nodes = await metadata.get_nodes(session, ids, owner_id)
    if not nodes:
        return []
    await metadata.require_folder(session, new_parent_id, owner_id)

    if new_parent_id is not None:
        for node in nodes:
            if await metadata.is_descendant_or_self(session, new_parent_id, node.id, owner_id):
                raise InvalidParentError(
                    f"Cannot move {node.id} into its own subtree: {new_parent_id}"
                )

    now = utcnow()
    moved: list[str] = []
    for node in nodes:
        if node.parent_id == new_parent_id:
            continue
        node.parent_id = new_parent_id
        node.modified_at = now
        moved.append(node.id)
    await session.flush()

    if moved:
        await sharing.prune_after_move(session, moved, owner_id)
    return moved


async def copy(
    session: AsyncSession,
    owner_id: str,
    ids: list[str],
    new_parent_id: str | None,
    *,
    metadata: MetadataService,
    file_model: type[FileNodeBase],
    blob_store: BlobStore | None,
) -> dict[str, str]:
    """Deep-copy the owned, non-trashed nodes among *ids* under *new_parent_id*.

    Every non-trashed node of each closure gets a new id; content is
    duplicated through *blob_store*.  Copies keep ``starred`` and start
    unshared.  A selected node already inside another selected node's
    closure is copied once, with its ancestor.  Returns ``{source_id: copy_id}``.
    """
    await metadata.require_folder(session, new_parent_id, owner_id)
    roots = await metadata.get_nodes(session, ids, owner_id)

    # Snapshot every closure before inserting, so copying a folder into
    # its own subtree does not pick up the copies.
    snapshots: list[list[FileNodeBase]] = []
    covered: set[str] = set()
    for root in roots:
        if root.id in covered:
            continue
        closure = await metadata.walk_subtree(session, [root.id], owner_id, include_deleted=False)
        snapshots.append(closure)
        covered.update(n.id for n in closure)
    snapshots = [s for s in snapshots if not _nested(s, snapshots)]

    mapping: dict[str, str] = {}
    copied_refs: list[str] = []
    now = utcnow()
    try:
        for closure in snapshots:
            root_id = closure[0].id
            for node in closure:
                parent = new_parent_id if node.id == root_id else mapping[node.parent_id]  # type: ignore[index]
                storage_ref = node.storage_ref
                if storage_ref is not None and blob_store is not None:
                    storage_ref = await blob_store.copy(storage_ref)
                    copied_refs.append(storage_ref)
                clone = file_model(
                    id=str(uuid.uuid4()),
                    name=node.name,
                    kind=node.kind,
                    size=node.size,
                    mime_type=node.mime_type,
                    storage_ref=storage_ref,
                    owner_id=owner_id,
                    parent_id=parent,
                    starred=node.starred,
                    shared=False,
                    created_at=now,
                    modified_at=now,
                )
                session.add(clone)
                mapping[node.id] = clone.id
        await session.flush()
    except Exception:
        await _release_refs(blob_store, copied_refs)
        raise
    return mapping


def _nested(closure: list[FileNodeBase], snapshots: list[list[FileNodeBase]]) -> bool:
    """True if *closure*'s root sits inside a different snapshot."""
    root_id = closure[0].id
    return any(other is not closure and root_id in {n.id for n in other} for other in snapshots)


async def _release_refs(blob_store: BlobStore | None, refs: list[str]) -> None:
    if blob_store is None:
        return
    for ref in refs:
        try:
            await blob_store.delete(ref)
        except Exception:
            logger.warning("Failed to release blob %s", ref, exc_info=True)


# ----------------------------------------------------------------------
# Sizes
# ----------------------------------------------------------------------


async def folder_size(
    session: AsyncSession,
    owner_id: str,
    folder_id: str,
    *,
    metadata: MetadataService,
) -> int:
    node = await metadata.require_node(session, folder_id, owner_id)
    if not node.is_folder:
        return node.size or 0
    return await metadata.folder_size(session, folder_id, owner_id)
