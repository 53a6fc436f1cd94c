"""LocalBlobStore — content blobs as flat files under a root directory."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import uuid
from pathlib import Path, PurePosixPath


class LocalBlobStore:
    """Stores each blob as ``{root}/{ref}``.  Implements ``BlobStore``.

    References are relative names.  Absolute references and references
    that escape the root are rejected.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise NotADirectoryError(f"Blob root is not a directory: {self.root}")

    def _resolve(self, ref: str) -> Path:
        rel = PurePosixPath(ref)
        if not ref or rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"Invalid storage reference: {ref!r}")
        candidate = (self.root / rel).resolve()
        if not candidate.is_relative_to(self.root):
            raise ValueError(f"Storage reference escapes blob root: {ref!r}")
        return candidate

    @staticmethod
    def new_ref(ref: str) -> str:
        """Fresh reference that keeps *ref*'s extension."""
        return uuid.uuid4().hex + PurePosixPath(ref).suffix

    async def copy(self, ref: str) -> str:
        src = self._resolve(ref)
        new = self.new_ref(ref)
        dest = self._resolve(new)
        await asyncio.to_thread(shutil.copyfile, src, dest)
        return new

    async def delete(self, ref: str) -> None:
        path = self._resolve(ref)

        def _do_delete() -> None:
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

        await asyncio.to_thread(_do_delete)

    async def exists(self, ref: str) -> bool:
        return await asyncio.to_thread(self._resolve(ref).exists)
