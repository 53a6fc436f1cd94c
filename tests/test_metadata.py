"""Tests for MetadataService — lookup, closure walks, ordering."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from canopy.fs.exceptions import ConflictError, InvalidParentError, NotFoundError
from canopy.fs.metadata import MetadataService, normalize_sort
from canopy.models.files import FileNode

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


async def _add(
    session: AsyncSession,
    name: str,
    *,
    kind: str = "folder",
    parent: FileNode | None = None,
    owner: str = "u1",
    size: int | None = None,
    deleted: bool = False,
) -> FileNode:
    node = FileNode(
        name=name,
        kind=kind,
        owner_id=owner,
        parent_id=parent.id if parent else None,
        size=size,
        deleted_at=datetime.now(UTC) if deleted else None,
    )
    session.add(node)
    await session.flush()
    return node


@pytest.fixture(params=["bfs", "cte"])
def metadata(request: pytest.FixtureRequest) -> MetadataService:
    return MetadataService(FileNode, closure_strategy=request.param)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class TestLookup:
    async def test_get_node_scoped_to_owner(
        self, metadata: MetadataService, async_session: AsyncSession
    ):
        node = await _add(async_session, "docs")
        assert await metadata.get_node(async_session, node.id, "u1") is not None
        assert await metadata.get_node(async_session, node.id, "u2") is None

    async def test_get_node_hides_trashed(
        self, metadata: MetadataService, async_session: AsyncSession
    ):
        node = await _add(async_session, "old", deleted=True)
        assert await metadata.get_node(async_session, node.id, "u1") is None
        assert await metadata.get_node(async_session, node.id, "u1", include_deleted=True)

    async def test_require_node(self, metadata: MetadataService, async_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await metadata.require_node(async_session, "missing", "u1")

    async def test_get_nodes_request_order(
        self, metadata: MetadataService, async_session: AsyncSession
    ):
        a = await _add(async_session, "a")
        b = await _add(async_session, "b")
        other = await _add(async_session, "c", owner="u2")
        nodes = await metadata.get_nodes(async_session, [b.id, other.id, a.id, b.id], "u1")
        assert [n.id for n in nodes] == [b.id, a.id]

    async def test_require_folder(self, metadata: MetadataService, async_session: AsyncSession):
        folder = await _add(async_session, "f")
        file = await _add(async_session, "x.txt", kind="file")
        trashed = await _add(async_session, "t", deleted=True)
        assert await metadata.require_folder(async_session, None, "u1") is None
        assert (await metadata.require_folder(async_session, folder.id, "u1")).id == folder.id
        for bad in (file.id, trashed.id, "missing"):
            with pytest.raises(InvalidParentError):
                await metadata.require_folder(async_session, bad, "u1")
        with pytest.raises(InvalidParentError):
            await metadata.require_folder(async_session, folder.id, "u2")


# ---------------------------------------------------------------------------
# Closure
# ---------------------------------------------------------------------------


class TestRecursiveIds:
    async def test_self_inclusive(self, metadata: MetadataService, async_session: AsyncSession):
        root = await _add(async_session, "root")
        a = await _add(async_session, "a", parent=root)
        b = await _add(async_session, "b.txt", kind="file", parent=a)
        ids = await metadata.get_recursive_ids(async_session, [root.id], "u1")
        assert ids[0] == root.id
        assert set(ids) == {root.id, a.id, b.id}

    async def test_file_root(self, metadata: MetadataService, async_session: AsyncSession):
        f = await _add(async_session, "solo.txt", kind="file")
        assert await metadata.get_recursive_ids(async_session, [f.id], "u1") == [f.id]

    async def test_excludes_trashed_when_asked(
        self, metadata: MetadataService, async_session: AsyncSession
    ):
        root = await _add(async_session, "root")
        live = await _add(async_session, "live", parent=root)
        gone = await _add(async_session, "gone", parent=root, deleted=True)
        await _add(async_session, "under-gone", parent=gone)
        ids = await metadata.get_recursive_ids(
            async_session, [root.id], "u1", include_deleted=False
        )
        assert set(ids) == {root.id, live.id}

    async def test_other_owner_excluded(
        self, metadata: MetadataService, async_session: AsyncSession
    ):
        root = await _add(async_session, "root")
        assert await metadata.get_recursive_ids(async_session, [root.id], "u2") == []

    async def test_terminates_on_cycle(
        self, metadata: MetadataService, async_session: AsyncSession
    ):
        a = await _add(async_session, "a")
        b = await _add(async_session, "b", parent=a)
        a.parent_id = b.id  # corrupted data
        await async_session.flush()
        ids = await metadata.get_recursive_ids(async_session, [a.id], "u1")
        assert set(ids) == {a.id, b.id}

    async def test_overlapping_roots(
        self, metadata: MetadataService, async_session: AsyncSession
    ):
        root = await _add(async_session, "root")
        child = await _add(async_session, "child", parent=root)
        ids = await metadata.get_recursive_ids(async_session, [root.id, child.id], "u1")
        assert sorted(ids) == sorted({root.id, child.id})


class TestWalkSubtree:
    async def test_parents_before_children(self, async_session: AsyncSession):
        metadata = MetadataService(FileNode)
        root = await _add(async_session, "root")
        a = await _add(async_session, "a", parent=root)
        b = await _add(async_session, "b", parent=a)
        nodes = await metadata.walk_subtree(async_session, [root.id], "u1")
        assert [n.id for n in nodes] == [root.id, a.id, b.id]

    async def test_depth_cap(self, async_session: AsyncSession):
        metadata = MetadataService(FileNode, max_depth=3)
        parent = await _add(async_session, "l0")
        top = parent
        for i in range(1, 6):
            parent = await _add(async_session, f"l{i}", parent=parent)
        with pytest.raises(ConflictError):
            await metadata.walk_subtree(async_session, [top.id], "u1")

    def test_invalid_strategy(self):
        with pytest.raises(ValueError):
            MetadataService(FileNode, closure_strategy="dfs")


class TestIsDescendantOrSelf:
    async def test_relationships(self, metadata: MetadataService, async_session: AsyncSession):
        root = await _add(async_session, "root")
        a = await _add(async_session, "a", parent=root)
        b = await _add(async_session, "b", parent=a)
        other = await _add(async_session, "other")
        assert await metadata.is_descendant_or_self(async_session, b.id, root.id, "u1")
        assert await metadata.is_descendant_or_self(async_session, a.id, a.id, "u1")
        assert not await metadata.is_descendant_or_self(async_session, root.id, b.id, "u1")
        assert not await metadata.is_descendant_or_self(async_session, b.id, other.id, "u1")


# ---------------------------------------------------------------------------
# Sizes & ordering
# ---------------------------------------------------------------------------


class TestFolderSize:
    async def test_sums_live_files(self, metadata: MetadataService, async_session: AsyncSession):
        root = await _add(async_session, "root")
        sub = await _add(async_session, "sub", parent=root)
        await _add(async_session, "a", kind="file", parent=root, size=10)
        await _add(async_session, "b", kind="file", parent=sub, size=5)
        await _add(async_session, "c", kind="file", parent=sub, size=100, deleted=True)
        assert await metadata.folder_size(async_session, root.id, "u1") == 15

    async def test_empty_folder(self, metadata: MetadataService, async_session: AsyncSession):
        root = await _add(async_session, "root")
        assert await metadata.folder_size(async_session, root.id, "u1") == 0


class TestSortHelpers:
    def test_normalize_sort(self):
        assert normalize_sort("name", "ASC") == ("name", "asc")
        with pytest.raises(ValueError, match="sort field"):
            normalize_sort("color", "asc")
        with pytest.raises(ValueError, match="sort order"):
            normalize_sort("name", "up")

    def test_node_to_info_normalizes_naive_datetimes(self):
        node = FileNode(
            name="x",
            owner_id="u1",
            created_at=datetime(2026, 1, 1),
            modified_at=datetime(2026, 1, 1),
        )
        info = MetadataService.node_to_info(node, datetime(2026, 2, 1))
        assert info.created_at is not None and info.created_at.tzinfo is UTC
        assert info.expires_at == datetime(2026, 2, 1, tzinfo=UTC)

    async def test_sort_by_size_fills_folders(self, async_session: AsyncSession):
        metadata = MetadataService(FileNode)
        big = await _add(async_session, "big")
        await _add(async_session, "inner", kind="file", parent=big, size=50)
        small = await _add(async_session, "small.txt", kind="file", size=5)
        infos = [MetadataService.node_to_info(n) for n in (small, big)]
        ordered = await metadata.sort_by_size(async_session, infos, "u1", "desc")
        assert [i.id for i in ordered] == [big.id, small.id]
        assert ordered[0].size == 50

    def test_order_by_tie_breakers(self):
        clauses = MetadataService(FileNode).order_by("name", "desc")
        assert len(clauses) == 3
