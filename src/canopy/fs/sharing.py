"""ShareLinkRegistry — tokenized share links over materialized subtree closures.

Stateless apart from its collaborators: it receives the concrete models,
the ``MetadataService`` and the cache at construction and a session at
call time.  Mutating methods flush but never commit; the caller owns the
transaction and must invalidate the cache after committing.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, update
from sqlmodel import select

from .cache import MISS, CacheKeys, CacheScopes
from .dialect import batched, insert_ignore
from .exceptions import ExpiredError, NotFoundError
from .metadata import MetadataService
from .types import FileInfo, ShareOutcome, ShareResolution, SweepResult
from .utils import DEFAULT_TOKEN_LENGTH, dedupe, ensure_utc, generate_token, is_expired, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from canopy.models.files import FileNodeBase
    from canopy.models.shares import ShareLinkBase, ShareLinkFileBase

    from .cache import CacheCoherencyLayer


logger = logging.getLogger(__name__)


class ShareLinkRegistry:
    """Creates, extends, resolves, revokes and expires share links.

    Invariant: every membership row ``(token, file_id)`` names the share
    root or a descendant of it.  Rows are derived from closure walks and
    pruned explicitly when a node leaves the shared subtree.
    """

    def __init__(
        self,
        share_model: type[ShareLinkBase],
        member_model: type[ShareLinkFileBase],
        file_model: type[FileNodeBase],
        metadata: MetadataService,
        cache: CacheCoherencyLayer,
        *,
        dialect: str = "sqlite",
        token_length: int = DEFAULT_TOKEN_LENGTH,
    ) -> None:
        self._share_model = share_model
        self._member_model = member_model
        self._file_model = file_model
        self._metadata = metadata
        self._cache = cache
        self.dialect = dialect
        self.token_length = token_length

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    async def get_share(
        self,
        session: AsyncSession,
        root_id: str,
        owner_id: str,
    ) -> ShareLinkBase | None:
        """The share rooted at *root_id* for *owner_id*, expired or not."""
        model = self._share_model
        result = await session.execute(
            select(model).where(model.file_id == root_id, model.user_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def get_by_token(self, session: AsyncSession, token: str) -> ShareLinkBase | None:
        return await session.get(self._share_model, token)

    async def _require_active(self, session: AsyncSession, token: str) -> ShareLinkBase:
        share = await self.get_by_token(session, token)
        if share is None:
            raise NotFoundError("Share link not found")
        if is_expired(share.expires_at):
            raise ExpiredError("Share link has expired")
        return share

    async def tokens_for_owner(self, session: AsyncSession, owner_id: str) -> list[str]:
        model = self._share_model
        result = await session.execute(select(model.id).where(model.user_id == owner_id))
        return list(result.scalars().all())

    async def member_ids(self, session: AsyncSession, token: str) -> list[str]:
        member = self._member_model
        result = await session.execute(select(member.file_id).where(member.share_id == token))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Create / extend
    # ------------------------------------------------------------------

    async def create_or_extend(
        self,
        session: AsyncSession,
        root_id: str,
        owner_id: str,
        expires_at: datetime | None = None,
    ) -> ShareOutcome:
        """Share *root_id*, or add its new descendants to its existing share.

        The token is stable across re-shares.  A share that has already
        expired (but not yet been swept) is replaced by a fresh one.
        Flushes but does not commit.
        """
        await self._metadata.require_node(session, root_id, owner_id)
        tree_ids = await self._metadata.get_recursive_ids(
            session, [root_id], owner_id, include_deleted=False
        )

        former: list[str] = []
        share = await self.get_share(session, root_id, owner_id)
        if share is not None and is_expired(share.expires_at):
            logger.info("Replacing expired share %s for %s", share.id, root_id)
            former = await self._delete_shares(session, [share.id])
            share = None

        created = share is None
        if share is None:
            share = self._share_model(
                id=generate_token(self.token_length),
                file_id=root_id,
                user_id=owner_id,
                expires_at=expires_at,
            )
            session.add(share)
            await session.flush()
        elif expires_at is not None:
            share.expires_at = expires_at

        await self.add_members(session, share.id, tree_ids)
        await self.mark_shared(session, tree_ids, owner_id)
        # Members of the replaced share may have fallen outside the new closure.
        await self.refresh_shared_flags(session, former)
        await session.flush()

        if created:
            logger.info("Share link created for %s (%d files)", root_id, len(tree_ids))
        return ShareOutcome(token=share.id, created=created, member_count=len(tree_ids))

    async def link_to_parent_share(
        self,
        session: AsyncSession,
        file_id: str,
        owner_id: str,
    ) -> str | None:
        """Add *file_id*'s closure to the nearest active ancestor share.

        Returns that share's token, or ``None`` when no ancestor is shared.
        Never mints a token.
        """
        node = await self._metadata.require_node(session, file_id, owner_id)
        share = await self._nearest_ancestor_share(session, node.parent_id, owner_id)
        if share is None:
            return None
        tree_ids = await self._metadata.get_recursive_ids(
            session, [file_id], owner_id, include_deleted=False
        )
        await self.add_members(session, share.id, tree_ids)
        await self.mark_shared(session, tree_ids, owner_id)
        await session.flush()
        return share.id

    async def _nearest_ancestor_share(
        self,
        session: AsyncSession,
        parent_id: str | None,
        owner_id: str,
    ) -> ShareLinkBase | None:
        model = self._file_model
        current = parent_id
        steps = 0
        while current is not None and steps <= self._metadata.max_depth:
            share = await self.get_share(session, current, owner_id)
            if share is not None and not is_expired(share.expires_at):
                return share
            result = await session.execute(
                select(model.parent_id).where(model.id == current, model.owner_id == owner_id)
            )
            current = result.scalar_one_or_none()
            steps += 1
        return None

    async def add_members(self, session: AsyncSession, token: str, file_ids: list[str]) -> int:
        rows = [{"share_id": token, "file_id": fid} for fid in dedupe(file_ids)]
        return await insert_ignore(
            session,
            self.dialect,
            self._member_model,
            rows,
            conflict_keys=["share_id", "file_id"],
        )

    async def update_expiry(
        self,
        session: AsyncSession,
        root_id: str,
        owner_id: str,
        expires_at: datetime | None,
    ) -> str:
        """Set or clear the expiry of an existing share.  Returns its token."""
        share = await self.get_share(session, root_id, owner_id)
        if share is None:
            raise NotFoundError(f"No share link for: {root_id}")
        share.expires_at = expires_at
        await session.flush()
        return share.id

    # ------------------------------------------------------------------
    # Shared flag
    # ------------------------------------------------------------------

    async def mark_shared(self, session: AsyncSession, ids: list[str], owner_id: str) -> None:
        model = self._file_model
        for chunk in batched(dedupe(ids)):
            await session.execute(
                update(model)
                .where(model.id.in_(chunk), model.owner_id == owner_id)  # type: ignore[union-attr]
                .values(shared=True)
            )

    async def refresh_shared_flags(self, session: AsyncSession, ids: list[str]) -> list[str]:
        """Recompute ``shared`` as "covered by at least one remaining share".

        Returns the ids whose flag ended up cleared.
        """
        ids = dedupe(ids)
        if not ids:
            return []
        member = self._member_model
        model = self._file_model
        covered: set[str] = set()
        for chunk in batched(ids):
            result = await session.execute(
                select(member.file_id).where(member.file_id.in_(chunk)).distinct()  # type: ignore[attr-defined]
            )
            covered.update(result.scalars().all())
        uncovered = [i for i in ids if i not in covered]
        for chunk in batched(sorted(covered)):
            await session.execute(
                update(model).where(model.id.in_(chunk)).values(shared=True)  # type: ignore[union-attr]
            )
        for chunk in batched(uncovered):
            await session.execute(
                update(model).where(model.id.in_(chunk)).values(shared=False)  # type: ignore[union-attr]
            )
        return uncovered

    # ------------------------------------------------------------------
    # Revoke / prune
    # ------------------------------------------------------------------

    async def _delete_shares(self, session: AsyncSession, tokens: list[str]) -> list[str]:
        """Delete *tokens* and their memberships.  Returns former member ids."""
        if not tokens:
            return []
        member = self._member_model
        model = self._share_model
        former: list[str] = []
        for token in tokens:
            former.extend(await self.member_ids(session, token))
        for chunk in batched(tokens):
            await session.execute(delete(member).where(member.share_id.in_(chunk)))  # type: ignore[attr-defined]
            await session.execute(delete(model).where(model.id.in_(chunk)))  # type: ignore[union-attr]
        await session.flush()
        return dedupe(former)

    async def revoke(self, session: AsyncSession, root_id: str, owner_id: str) -> str | None:
        """Delete the share rooted at *root_id* and refresh ``shared`` flags.

        Returns the revoked token, or ``None`` if the root was not shared.
        """
        share = await self.get_share(session, root_id, owner_id)
        if share is None:
            return None
        token = share.id
        former = await self._delete_shares(session, [token])
        await self.refresh_shared_flags(session, former)
        logger.info("Share link revoked for %s", root_id)
        return token

    async def remove_files_from_shares(
        self,
        session: AsyncSession,
        file_ids: list[str],
        owner_id: str,
    ) -> list[str]:
        """Drop *file_ids* from every share of *owner_id*.  Returns affected tokens."""
        file_ids = dedupe(file_ids)
        tokens = await self.tokens_for_owner(session, owner_id)
        if not file_ids or not tokens:
            return []
        member = self._member_model
        affected: set[str] = set()
        for chunk in batched(file_ids):
            result = await session.execute(
                select(member.share_id).where(
                    member.file_id.in_(chunk),  # type: ignore[attr-defined]
                    member.share_id.in_(tokens),  # type: ignore[attr-defined]
                )
            )
            affected.update(result.scalars().all())
            await session.execute(
                delete(member).where(
                    member.file_id.in_(chunk),  # type: ignore[attr-defined]
                    member.share_id.in_(tokens),  # type: ignore[attr-defined]
                )
            )
        await self.refresh_shared_flags(session, file_ids)
        return sorted(affected)

    async def prune_after_move(
        self,
        session: AsyncSession,
        moved_ids: list[str],
        owner_id: str,
    ) -> list[str]:
        """Remove memberships invalidated by reparenting *moved_ids*.

        A membership survives when the share root moved along with the
        node or is still an ancestor of the node's new position.
        Returns the affected tokens.
        """
        member = self._member_model
        affected: set[str] = set()
        touched: list[str] = []
        for root in dedupe(moved_ids):
            closure = await self._metadata.get_recursive_ids(session, [root], owner_id)
            closure_set = set(closure)
            tokens: set[str] = set()
            for chunk in batched(closure):
                result = await session.execute(
                    select(member.share_id).where(member.file_id.in_(chunk))  # type: ignore[attr-defined]
                )
                tokens.update(result.scalars().all())
            for token in sorted(tokens):
                share = await self.get_by_token(session, token)
                if share is None or share.file_id in closure_set:
                    continue
                if await self._metadata.is_descendant_or_self(
                    session, root, share.file_id, owner_id
                ):
                    continue
                for chunk in batched(closure):
                    await session.execute(
                        delete(member).where(
                            member.share_id == token,
                            member.file_id.in_(chunk),  # type: ignore[attr-defined]
                        )
                    )
                affected.add(token)
                touched.extend(closure)
        if touched:
            await self.refresh_shared_flags(session, touched)
        return sorted(affected)

    async def delete_for_files(
        self,
        session: AsyncSession,
        file_ids: list[str],
        owner_id: str,
    ) -> tuple[list[str], list[str]]:
        """Cascade for permanent deletion of *file_ids*.

        Deletes shares rooted in *file_ids* and every membership naming
        them.  Returns ``(revoked_tokens, surviving_former_members)``.
        """
        file_ids = dedupe(file_ids)
        if not file_ids:
            return [], []
        share = self._share_model
        member = self._member_model
        rooted: list[str] = []
        for chunk in batched(file_ids):
            result = await session.execute(
                select(share.id).where(
                    share.file_id.in_(chunk),  # type: ignore[union-attr]
                    share.user_id == owner_id,
                )
            )
            rooted.extend(result.scalars().all())
        former = await self._delete_shares(session, rooted)
        for chunk in batched(file_ids):
            await session.execute(delete(member).where(member.file_id.in_(chunk)))  # type: ignore[attr-defined]
        doomed = set(file_ids)
        survivors = [i for i in former if i not in doomed]
        await self.refresh_shared_flags(session, survivors)
        return rooted, survivors

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def sweep_expired(
        self,
        session: AsyncSession,
        now: datetime | None = None,
    ) -> SweepResult:
        """Delete every expired share and clear ``shared`` where no coverage remains."""
        now = now or utcnow()
        model = self._share_model
        result = await session.execute(
            select(model).where(model.expires_at.is_not(None))  # type: ignore[union-attr]
        )
        # Expiry is compared in Python: SQLite hands back naive datetimes.
        expired = [s for s in result.scalars().all() if is_expired(s.expires_at, now)]
        sweep = SweepResult(
            tokens=[s.id for s in expired],
            owners={s.user_id for s in expired},
        )
        if not expired:
            return sweep
        former = await self._delete_shares(session, sweep.tokens)
        sweep.unshared_ids = await self.refresh_shared_flags(session, former)
        logger.info("Swept %d expired share links", sweep.count)
        return sweep

    # ------------------------------------------------------------------
    # Reads (cache-first)
    # ------------------------------------------------------------------

    async def resolve_by_token(self, session: AsyncSession, token: str) -> ShareResolution:
        """Resolve *token* to its root node.

        Expired links resolve to ``expired=True`` with no node.  Unknown
        tokens, and links whose root is in trash, raise ``NotFoundError``.
        """
        key = CacheKeys.share_by_token(token)
        cached = await self._cache.get(key)
        if cached is MISS:
            stamp = await self._cache.stamp(CacheScopes.share(token))
            share = await self.get_by_token(session, token)
            if share is None:
                raise NotFoundError("Share link not found")
            expires_at = ensure_utc(share.expires_at)
            if is_expired(expires_at):
                return ShareResolution(token=token, expired=True, expires_at=expires_at)
            node = await self._metadata.get_node(session, share.file_id, share.user_id)
            if node is None:
                raise NotFoundError("Share link not found")
            cached = (MetadataService.node_to_info(node), expires_at)
            await self._cache.set_bounded(key, cached, expires_at, stamp=stamp)

        info, expires_at = cached
        if is_expired(expires_at):
            return ShareResolution(token=token, expired=True, expires_at=expires_at)
        return ShareResolution(token=token, expired=False, node=info, expires_at=expires_at)

    async def is_member(self, session: AsyncSession, token: str, file_id: str) -> bool:
        """True iff *file_id* is a live, non-trashed member of an unexpired share."""
        key = CacheKeys.share_check(token, file_id)
        cached = await self._cache.get(key)
        if cached is MISS:
            stamp = await self._cache.stamp(CacheScopes.share(token))
            share = await self.get_by_token(session, token)
            if share is None:
                return False
            expires_at = ensure_utc(share.expires_at)
            if is_expired(expires_at):
                return False
            member = self._member_model
            model = self._file_model
            result = await session.execute(
                select(member.file_id)
                .join(model, model.id == member.file_id)
                .where(
                    member.share_id == token,
                    member.file_id == file_id,
                    model.deleted_at.is_(None),  # type: ignore[unresolved-attribute]
                )
            )
            cached = (result.first() is not None, expires_at)
            await self._cache.set_bounded(key, cached, expires_at, stamp=stamp)

        found, expires_at = cached
        return bool(found) and not is_expired(expires_at)

    async def _member_children(
        self,
        session: AsyncSession,
        token: str,
        parent_ids: list[str],
    ) -> list[FileNodeBase]:
        member = self._member_model
        model = self._file_model
        out: list[FileNodeBase] = []
        for chunk in batched(parent_ids):
            result = await session.execute(
                select(model)
                .join(member, member.file_id == model.id)
                .where(
                    member.share_id == token,
                    model.parent_id.in_(chunk),  # type: ignore[union-attr]
                    model.deleted_at.is_(None),  # type: ignore[unresolved-attribute]
                )
                .order_by(model.kind.desc(), model.name, model.id)  # type: ignore[attr-defined]
            )
            out.extend(result.scalars().all())
        return out

    async def subtree_under_share(
        self,
        session: AsyncSession,
        token: str,
        root_id: str,
    ) -> list[FileInfo]:
        """Nodes reachable from *root_id* through member rows only, root first."""
        await self._require_active(session, token)
        if not await self.is_member(session, token, root_id):
            raise NotFoundError(f"File not found in share: {root_id}")
        root = await session.get(self._file_model, root_id)
        if root is None:
            raise NotFoundError(f"File not found in share: {root_id}")

        out = [root]
        seen = {root.id}
        frontier = [root.id] if root.is_folder else []
        depth = 0
        while frontier and depth < self._metadata.max_depth:
            depth += 1
            children = [c for c in await self._member_children(session, token, frontier) if c.id not in seen]
            seen.update(c.id for c in children)
            out.extend(children)
            frontier = [c.id for c in children if c.is_folder]
        return [MetadataService.node_to_info(n) for n in out]

    async def list_share_folder(
        self,
        session: AsyncSession,
        token: str,
        folder_id: str | None = None,
    ) -> list[FileInfo]:
        """Direct member children of *folder_id* (default: the share root).

        Folders first, then by name.
        """
        key = CacheKeys.share_folder(token, folder_id)
        cached = await self._cache.get(key)
        if cached is not MISS:
            infos, expires_at = cached
            if is_expired(expires_at):
                raise ExpiredError("Share link has expired")
            return list(infos)

        stamp = await self._cache.stamp(CacheScopes.share(token))
        share = await self._require_active(session, token)
        target = folder_id or share.file_id
        if not await self.is_member(session, token, target):
            raise NotFoundError(f"Folder not found in share: {target}")
        children = await self._member_children(session, token, [target])
        infos = tuple(MetadataService.node_to_info(n) for n in children)
        expires_at = ensure_utc(share.expires_at)
        await self._cache.set_bounded(key, (infos, expires_at), expires_at, stamp=stamp)
        return list(infos)

    async def get_share_links(
        self,
        session: AsyncSession,
        file_ids: list[str],
        owner_id: str,
    ) -> dict[str, str]:
        """Tokens of the active shares rooted at *file_ids*.

        Cache lookups are batched; only the misses hit the store, in one
        query, and only those keys are written back.
        """
        file_ids = dedupe(file_ids)
        keys = {fid: CacheKeys.share_link(owner_id, fid) for fid in file_ids}
        hits = await self._cache.get_many(keys.values())

        entries: dict[str, Any] = {}
        misses: list[str] = []
        for fid in file_ids:
            if keys[fid] in hits:
                entries[fid] = hits[keys[fid]]
            else:
                misses.append(fid)

        if misses:
            stamp = await self._cache.stamp(CacheScopes.links(owner_id))
            model = self._share_model
            fetched: dict[str, ShareLinkBase] = {}
            for chunk in batched(misses):
                result = await session.execute(
                    select(model).where(
                        model.file_id.in_(chunk),  # type: ignore[union-attr]
                        model.user_id == owner_id,
                    )
                )
                fetched.update({s.file_id: s for s in result.scalars().all()})
            for fid in misses:
                share = fetched.get(fid)
                if share is None:
                    entries[fid] = None
                    await self._cache.set(keys[fid], None, stamp=stamp)
                else:
                    entry = (share.id, ensure_utc(share.expires_at))
                    entries[fid] = entry
                    await self._cache.set_bounded(keys[fid], entry, entry[1], stamp=stamp)

        links: dict[str, str] = {}
        for fid, entry in entries.items():
            if entry is None:
                continue
            token, expires_at = entry
            if not is_expired(expires_at):
                links[fid] = token
        return links
