"""TrashService — soft delete, listing, restore, permanent delete, and purge."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete
from sqlmodel import select

from .dialect import batched
from .exceptions import NotFoundError
from .metadata import MetadataService
from .types import DeleteResult
from .utils import dedupe, ensure_utc, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from canopy.models.files import FileNodeBase

    from .sharing import ShareLinkRegistry
    from .types import FileInfo

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 15


class TrashService:
    """Trash management with explicit recursive stamping.

    Trashing a node stamps it and every non-trashed descendant with one
    shared ``deleted_at`` value.  Restore clears exactly that stamp, so a
    descendant trashed separately beforehand stays in trash.

    Depends on ``ShareLinkRegistry`` for the permanent-delete cascade and
    for pruning memberships of nodes re-homed on restore.
    Blob content is *not* released here; ``permanently_delete`` reports
    the references so the caller can release them after commit.
    """

    def __init__(
        self,
        file_model: type[FileNodeBase],
        metadata: MetadataService,
        sharing: ShareLinkRegistry,
    ) -> None:
        self._file_model = file_model
        self._metadata = metadata
        self._sharing = sharing

    async def soft_delete(
        self,
        session: AsyncSession,
        ids: list[str],
        owner_id: str,
    ) -> list[str]:
        """Move the owned, live nodes among *ids* (and their closures) to trash.

        Returns every id that was stamped.
        """
        roots = await self._metadata.get_nodes(session, ids, owner_id)
        if not roots:
            return []
        closure = await self._metadata.walk_subtree(
            session, [r.id for r in roots], owner_id, include_deleted=False
        )
        now = utcnow()
        for node in closure:
            node.deleted_at = now
        await session.flush()
        return [n.id for n in closure]

    async def restore(
        self,
        session: AsyncSession,
        ids: list[str],
        owner_id: str,
    ) -> list[str]:
        """Undo ``soft_delete`` for the trashed nodes among *ids*.

        A restored node whose parent is gone or still in trash moves to
        the root level.  Raises ``NotFoundError`` when none of *ids* is
        currently in trash.
        """
        candidates = await self._metadata.get_nodes(session, ids, owner_id, include_deleted=True)
        roots = [n for n in candidates if n.deleted_at is not None]
        if not roots:
            raise NotFoundError("Nothing to restore")

        restored: list[FileNodeBase] = []
        for root in roots:
            if root.deleted_at is None:
                # Already cleared as a descendant of an earlier root.
                continue
            stamp = ensure_utc(root.deleted_at)
            closure = await self._metadata.walk_subtree(
                session, [root.id], owner_id, include_deleted=True
            )
            for node in closure:
                if node.deleted_at is not None and ensure_utc(node.deleted_at) == stamp:
                    node.deleted_at = None
                    restored.append(node)
        await session.flush()

        rehomed: list[str] = []
        for root in roots:
            if root.parent_id is None:
                continue
            parent = await self._metadata.get_node(session, root.parent_id, owner_id)
            if parent is None:
                logger.info("Re-homing restored node %s to root", root.id)
                root.parent_id = None
                rehomed.append(root.id)
        await session.flush()
        if rehomed:
            # Re-homing is a move out of any share rooted above the old parent.
            await self._sharing.prune_after_move(session, rehomed, owner_id)
        return dedupe([n.id for n in restored])

    async def permanently_delete(
        self,
        session: AsyncSession,
        ids: list[str],
        owner_id: str,
    ) -> DeleteResult:
        """Delete the closures of the owned nodes among *ids*, trashed or not.

        Share links rooted in the closure and every membership naming it
        go first.  Irreversible.
        """
        roots = await self._metadata.get_nodes(session, ids, owner_id, include_deleted=True)
        if not roots:
            return DeleteResult()
        closure = await self._metadata.walk_subtree(
            session, [r.id for r in roots], owner_id, include_deleted=True
        )
        doomed = [n.id for n in closure]
        refs = [n.storage_ref for n in closure if n.storage_ref]

        tokens, _ = await self._sharing.delete_for_files(session, doomed, owner_id)

        model = self._file_model
        for chunk in batched(doomed):
            await session.execute(
                delete(model).where(model.id.in_(chunk))  # type: ignore[union-attr]
            )
        await session.flush()

        return DeleteResult(deleted_ids=doomed, released_refs=refs, revoked_tokens=tokens)

    async def list_trash(
        self,
        session: AsyncSession,
        owner_id: str,
        sort_by: str = "deleted_at",
        order: str = "desc",
    ) -> list[FileInfo]:
        """Trash roots of *owner_id*: trashed nodes not trashed along with their parent."""
        model = self._file_model
        result = await session.execute(
            select(model)
            .where(
                model.owner_id == owner_id,
                model.deleted_at.is_not(None),  # type: ignore[unresolved-attribute]
            )
            .order_by(*self._metadata.order_by(sort_by if sort_by != "size" else "name", order))
        )
        trashed = list(result.scalars().all())
        stamps = {n.id: ensure_utc(n.deleted_at) for n in trashed}
        tops = [
            n
            for n in trashed
            if n.parent_id is None or stamps.get(n.parent_id) != ensure_utc(n.deleted_at)
        ]
        infos = [MetadataService.node_to_info(n) for n in tops]
        if sort_by == "size":
            infos = await self._metadata.sort_by_size(session, infos, owner_id, order)
        return infos

    async def expired_trash(
        self,
        session: AsyncSession,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        now: datetime | None = None,
    ) -> dict[str, list[str]]:
        """Ids of nodes trashed at least *retention_days* ago, grouped by owner."""
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        model = self._file_model
        result = await session.execute(
            select(model.id, model.owner_id, model.deleted_at).where(
                model.deleted_at.is_not(None)  # type: ignore[unresolved-attribute]
            )
        )
        # Compared in Python: SQLite hands back naive datetimes.
        grouped: dict[str, list[str]] = defaultdict(list)
        for file_id, owner_id, deleted_at in result.all():
            stamp = ensure_utc(deleted_at)
            if stamp is not None and stamp <= cutoff:
                grouped[owner_id].append(file_id)
        return dict(grouped)

    async def purge_expired_trash(
        self,
        session: AsyncSession,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        now: datetime | None = None,
    ) -> dict[str, DeleteResult]:
        """Permanently delete everything trashed longer than the retention window."""
        purged: dict[str, DeleteResult] = {}
        expired = await self.expired_trash(session, retention_days, now)
        for owner_id, ids in expired.items():
            purged[owner_id] = await self.permanently_delete(session, ids, owner_id)
        total = sum(r.total_deleted for r in purged.values())
        if total:
            logger.info("Purged %d expired trash items for %d owners", total, len(purged))
        return purged
