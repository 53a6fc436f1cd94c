"""Tests for the SQLModel tables and custom-table support."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.exc import IntegrityError

from canopy.fs.file_store import FileStore
from canopy.models import FileNode, FileNodeBase, ShareLink

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from canopy.fs.cache import CacheCoherencyLayer


class ArchiveNode(FileNodeBase, table=True):
    __tablename__ = "archive_files"


class TestFileNode:
    def test_defaults(self):
        node = FileNode(name="a.txt", owner_id="u1")
        assert node.kind == "file"
        assert not node.is_folder
        assert node.id
        assert node.created_at.tzinfo is not None
        assert node.deleted_at is None
        assert not node.starred and not node.shared

    def test_ids_unique(self):
        assert FileNode(name="a", owner_id="u1").id != FileNode(name="a", owner_id="u1").id

    async def test_kind_constraint(self, async_session: AsyncSession):
        async_session.add(FileNode(name="x", owner_id="u1", kind="symlink"))
        with pytest.raises(IntegrityError):
            await async_session.flush()


class TestShareLink:
    async def test_one_link_per_root_and_owner(self, async_session: AsyncSession):
        async_session.add(ShareLink(id="tok1", file_id="f1", user_id="u1"))
        await async_session.flush()
        async_session.add(ShareLink(id="tok2", file_id="f1", user_id="u1"))
        with pytest.raises(IntegrityError):
            await async_session.flush()


class TestCustomModel:
    async def test_store_on_custom_table(
        self, cache: CacheCoherencyLayer, async_session: AsyncSession
    ):
        store = FileStore(cache=cache, file_model=ArchiveNode)
        folder = await store.create_folder(async_session, "u1", "archive")
        await store.create_file(async_session, "u1", "old.txt", folder.id)
        assert await async_session.get(ArchiveNode, folder.id) is not None
        assert await async_session.get(FileNode, folder.id) is None
        children = await store.list_children(async_session, "u1", folder.id, "name", "asc")
        assert [c.name for c in children] == ["old.txt"]
