"""MetadataService — node lookup, info conversion, ordering, tree closure."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from sqlalchemy import func
from sqlmodel import select

from .dialect import batched
from .exceptions import ConflictError, InvalidParentError, NotFoundError
from .types import FileInfo
from .utils import dedupe, ensure_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from canopy.models.files import FileNodeBase

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 256

SORT_FIELDS = ("name", "size", "modified", "created", "deleted_at")
ORDERS = ("asc", "desc")


def normalize_sort(sort_by: str, order: str) -> tuple[str, str]:
    """Validate and canonicalize a ``(sort_by, order)`` pair."""
    if sort_by not in SORT_FIELDS:
        raise ValueError(f"Invalid sort field: {sort_by!r}. Must be one of {SORT_FIELDS}.")
    order = order.lower()
    if order not in ORDERS:
        raise ValueError(f"Invalid sort order: {order!r}. Must be 'asc' or 'desc'.")
    return sort_by, order


class MetadataService:
    """Stateless helpers for node lookup, conversion and closure walks.

    Receives the concrete node model at construction so callers can
    use custom SQLModel subclasses.
    """

    def __init__(
        self,
        file_model: type[FileNodeBase],
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        closure_strategy: str = "bfs",
    ) -> None:
        if closure_strategy not in ("bfs", "cte"):
            raise ValueError(f"Invalid closure strategy: {closure_strategy!r}")
        self._file_model = file_model
        self.max_depth = max_depth
        self.closure_strategy = closure_strategy

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_node(
        self,
        session: AsyncSession,
        file_id: str,
        owner_id: str,
        include_deleted: bool = False,
    ) -> FileNodeBase | None:
        """Get a node by id, scoped to *owner_id*."""
        model = self._file_model
        query = select(model).where(model.id == file_id, model.owner_id == owner_id)
        if not include_deleted:
            query = query.where(model.deleted_at.is_(None))  # type: ignore[unresolved-attribute]
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def require_node(
        self,
        session: AsyncSession,
        file_id: str,
        owner_id: str,
    ) -> FileNodeBase:
        node = await self.get_node(session, file_id, owner_id)
        if node is None:
            raise NotFoundError(f"File not found: {file_id}")
        return node

    async def get_nodes(
        self,
        session: AsyncSession,
        ids: list[str],
        owner_id: str,
        include_deleted: bool = False,
    ) -> list[FileNodeBase]:
        """Fetch the owned nodes among *ids*, in request order.  Others are dropped."""
        ids = dedupe(ids)
        if not ids:
            return []
        model = self._file_model
        found: dict[str, FileNodeBase] = {}
        for chunk in batched(ids):
            query = select(model).where(
                model.id.in_(chunk),  # type: ignore[union-attr]
                model.owner_id == owner_id,
            )
            if not include_deleted:
                query = query.where(model.deleted_at.is_(None))  # type: ignore[unresolved-attribute]
            result = await session.execute(query)
            found.update({n.id: n for n in result.scalars().all()})
        return [found[i] for i in ids if i in found]

    async def require_folder(
        self,
        session: AsyncSession,
        parent_id: str | None,
        owner_id: str,
    ) -> FileNodeBase | None:
        """Return the parent folder, ``None`` for root, or raise ``InvalidParentError``."""
        if parent_id is None:
            return None
        parent = await self.get_node(session, parent_id, owner_id)
        if parent is None or not parent.is_folder:
            raise InvalidParentError(f"Invalid parent folder: {parent_id}")
        return parent

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    async def walk_subtree(
        self,
        session: AsyncSession,
        root_ids: list[str],
        owner_id: str,
        include_deleted: bool = True,
    ) -> list[FileNodeBase]:
        """Return the roots and all transitive children, parents before children.

        Iterative breadth-first expansion over ``parent_id``.  A visited set
        makes it terminate on corrupted (cyclic) data; exceeding
        ``max_depth`` levels raises ``ConflictError``.
        """
        roots = await self.get_nodes(session, root_ids, owner_id, include_deleted)
        model = self._file_model
        out: list[FileNodeBase] = list(roots)
        seen = {n.id for n in roots}
        root_ids_set = set(seen)
        frontier = [n.id for n in roots if n.is_folder]
        depth = 0
        while frontier:
            depth += 1
            if depth > self.max_depth:
                raise ConflictError(f"Tree deeper than {self.max_depth} levels")
            next_frontier: list[str] = []
            for chunk in batched(frontier):
                query = select(model).where(
                    model.parent_id.in_(chunk),  # type: ignore[union-attr]
                    model.owner_id == owner_id,
                )
                if not include_deleted:
                    query = query.where(model.deleted_at.is_(None))  # type: ignore[unresolved-attribute]
                query = query.order_by(model.created_at, model.id)
                result = await session.execute(query)
                for child in result.scalars().all():
                    if child.id in seen:
                        if child.id in root_ids_set:
                            continue
                        logger.warning("Cycle detected at node %s (owner %s)", child.id, owner_id)
                        continue
                    seen.add(child.id)
                    out.append(child)
                    if child.is_folder:
                        next_frontier.append(child.id)
            frontier = next_frontier
        return out

    async def get_recursive_ids(
        self,
        session: AsyncSession,
        root_ids: list[str],
        owner_id: str,
        include_deleted: bool = True,
    ) -> list[str]:
        """Self-inclusive closure of *root_ids* owned by *owner_id*."""
        if self.closure_strategy == "cte":
            return await self._recursive_ids_cte(session, root_ids, owner_id, include_deleted)
        nodes = await self.walk_subtree(session, root_ids, owner_id, include_deleted)
        return [n.id for n in nodes]

    async def _recursive_ids_cte(
        self,
        session: AsyncSession,
        root_ids: list[str],
        owner_id: str,
        include_deleted: bool,
    ) -> list[str]:
        """Single-query closure using a recursive CTE.

        ``UNION`` (not ``UNION ALL``) deduplicates, so cyclic data still
        terminates.
        """
        roots = dedupe(root_ids)
        if not roots:
            return []
        model = self._file_model
        base_conditions: list[Any] = [
            model.id.in_(roots),  # type: ignore[union-attr]
            model.owner_id == owner_id,
        ]
        step_conditions: list[Any] = [model.owner_id == owner_id]
        if not include_deleted:
            base_conditions.append(model.deleted_at.is_(None))  # type: ignore[unresolved-attribute]
            step_conditions.append(model.deleted_at.is_(None))  # type: ignore[unresolved-attribute]

        closure = select(model.id).where(*base_conditions).cte("closure", recursive=True)
        closure = closure.union(
            select(model.id)
            .join(closure, model.parent_id == closure.c.id)
            .where(*step_conditions)
        )
        result = await session.execute(select(closure.c.id))
        found = set(result.scalars().all())
        head = [i for i in roots if i in found]
        return head + sorted(found.difference(head))

    async def is_descendant_or_self(
        self,
        session: AsyncSession,
        node_id: str,
        ancestor_id: str,
        owner_id: str,
    ) -> bool:
        """Walk ``parent_id`` upward from *node_id* looking for *ancestor_id*."""
        model = self._file_model
        current: str | None = node_id
        steps = 0
        while current is not None and steps <= self.max_depth:
            if current == ancestor_id:
                return True
            result = await session.execute(
                select(model.parent_id).where(model.id == current, model.owner_id == owner_id)
            )
            current = result.scalar_one_or_none()
            steps += 1
        return False

    # ------------------------------------------------------------------
    # Sizes & ordering
    # ------------------------------------------------------------------

    async def folder_size(self, session: AsyncSession, folder_id: str, owner_id: str) -> int:
        """Sum of file sizes in the non-trashed closure of *folder_id*."""
        ids = await self.get_recursive_ids(session, [folder_id], owner_id, include_deleted=False)
        if not ids:
            return 0
        model = self._file_model
        total = 0
        for chunk in batched(ids):
            result = await session.execute(
                select(func.coalesce(func.sum(model.size), 0)).where(
                    model.id.in_(chunk),  # type: ignore[union-attr]
                    model.kind == "file",
                )
            )
            total += int(result.scalar_one())
        return total

    def order_by(self, sort_by: str, order: str) -> list[Any]:
        """ORDER BY clauses for *sort_by*, tie-broken on ``created_at`` then ``id``."""
        model = self._file_model
        columns: dict[str, Any] = {
            "name": model.name,
            "size": model.size,
            "modified": model.modified_at,
            "created": model.created_at,
            "deleted_at": model.deleted_at,
        }
        column = columns[sort_by]
        primary = column.asc() if order == "asc" else column.desc()
        return [primary, model.created_at.asc(), model.id.asc()]  # type: ignore[union-attr]

    async def sort_by_size(
        self,
        session: AsyncSession,
        infos: list[FileInfo],
        owner_id: str,
        order: str,
    ) -> list[FileInfo]:
        """Fill folder sizes and sort on size, keeping the stable tie-break."""
        filled: list[FileInfo] = []
        for info in infos:
            if info.is_folder:
                info = replace(info, size=await self.folder_size(session, info.id, owner_id))
            filled.append(info)
        filled.sort(key=lambda i: (ensure_utc(i.created_at), i.id))
        filled.sort(key=lambda i: i.size or 0, reverse=order == "desc")
        return filled

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    @staticmethod
    def node_to_info(n: FileNodeBase, expires_at: Any = None) -> FileInfo:
        """Convert a node record to a detached ``FileInfo``."""
        return FileInfo(
            id=n.id,
            name=n.name,
            kind=n.kind,
            owner_id=n.owner_id,
            parent_id=n.parent_id,
            size=n.size,
            mime_type=n.mime_type,
            storage_ref=n.storage_ref,
            starred=n.starred,
            shared=n.shared,
            created_at=ensure_utc(n.created_at),
            modified_at=ensure_utc(n.modified_at),
            deleted_at=ensure_utc(n.deleted_at),
            expires_at=ensure_utc(expires_at),
        )
