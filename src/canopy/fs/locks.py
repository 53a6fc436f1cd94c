"""OperationSerializer — per-key async mutual exclusion.

Advisory and process-local.  It prevents read-modify-write races that
span several backing-store statements within one process; it is not a
replacement for transactions, and it does not serialize across replicas.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, ParamSpec, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class LockKey:
    """Opaque lock key.  Build with :meth:`user`, :meth:`file` or :meth:`system`."""

    namespace: str
    ident: str

    @classmethod
    def user(cls, user_id: str) -> LockKey:
        return cls("user", user_id)

    @classmethod
    def file(cls, file_id: str) -> LockKey:
        return cls("file", file_id)

    @classmethod
    def system(cls, name: str) -> LockKey:
        return cls("system", name)

    def __str__(self) -> str:
        return f"{self.namespace}:{self.ident}"


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class OperationSerializer:
    """Exclusive, non-reentrant lock per :class:`LockKey`.

    Entries are created on first use and dropped once nobody holds or
    waits on them, so the table stays proportional to in-flight work.
    """

    def __init__(self) -> None:
        self._slots: dict[LockKey, _Slot] = {}

    @asynccontextmanager
    async def hold(self, key: LockKey) -> AsyncIterator[None]:
        """Hold the lock for *key* for the duration of the ``async with`` block."""
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(key) is slot:
                del self._slots[key]

    async def run(
        self,
        key: LockKey,
        fn: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Await ``fn(*args, **kwargs)`` while holding *key*; propagate its result or error."""
        async with self.hold(key):
            return await fn(*args, **kwargs)

    def is_locked(self, key: LockKey) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.lock.locked()

    def __len__(self) -> int:
        return len(self._slots)
