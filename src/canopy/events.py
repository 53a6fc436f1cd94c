"""EventBus and audit event types."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from canopy.fs.protocol import AuditSink

    Handler = Callable[["AuditEvent"], Awaitable[Any]]

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of mutations reported to the audit sink."""

    FOLDER_CREATED = "folder.create"
    FILE_CREATED = "file.create"
    FILE_RENAMED = "file.rename"
    FILE_MOVED = "file.move"
    FILE_COPIED = "file.copy"
    FILE_STARRED = "file.star"
    FILE_TRASHED = "file.trash"
    FILE_RESTORED = "file.restore"
    FILE_DELETED = "file.delete"
    SHARE_CREATED = "share.create"
    SHARE_REVOKED = "share.revoke"
    SHARE_UPDATED = "share.update"
    SHARE_EXPIRED = "share.expire"
    TRASH_PURGED = "trash.purge"
    ADMIN_CLAIMED = "settings.admin_claim"
    SIGNUP_TOGGLED = "settings.signup"


class Outcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """Immutable record of a mutation attempt.

    Attributes:
        event_type: The kind of mutation.
        outcome: Whether it committed.
        resource_ref: Id of the affected node, share token, or setting.
        user_id: Acting user, when there is one (sweeps have none).
        metadata: Extra detail; error kind on failure.
    """

    event_type: EventType
    outcome: Outcome
    resource_ref: str
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class EventBus:
    """Fans audit events out to async handlers.

    A handler subscribes to one ``EventType`` or, via ``register_all``,
    to every type.  Typed handlers run before catch-all ones, each group
    in subscription order.  A handler that raises is logged and skipped;
    the remaining handlers still run and ``emit`` never raises.
    """

    def __init__(self) -> None:
        self._typed: dict[EventType, list[Handler]] = defaultdict(list)
        self._catch_all: list[Handler] = []

    def register(self, event_type: EventType, handler: Handler) -> None:
        self._typed[event_type].append(handler)

    def register_all(self, handler: Handler) -> None:
        """Subscribe *handler* to every event type."""
        self._catch_all.append(handler)

    def unregister(self, event_type: EventType | None, handler: Handler) -> bool:
        """Drop one subscription of *handler*; ``None`` targets the catch-all list.

        Returns whether a subscription was found.
        """
        handlers = self._catch_all if event_type is None else self._typed.get(event_type, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    async def emit(self, event: AuditEvent) -> None:
        for handler in (*self._typed.get(event.event_type, ()), *self._catch_all):
            try:
                await handler(event)
            except Exception:
                logger.warning(
                    "Audit handler %r raised on %s (%s)",
                    handler,
                    event.event_type.value,
                    event.resource_ref,
                    exc_info=True,
                )

    @property
    def handler_count(self) -> int:
        return len(self._catch_all) + sum(len(h) for h in self._typed.values())

    def clear(self) -> None:
        self._typed.clear()
        self._catch_all.clear()


def sink_handler(sink: AuditSink) -> Handler:
    """Adapt an ``AuditSink`` into an ``EventBus`` handler."""

    async def _record(event: AuditEvent) -> None:
        metadata = dict(event.metadata)
        if event.user_id is not None:
            metadata.setdefault("user_id", event.user_id)
        await sink.record(event.event_type.value, event.outcome.value, event.resource_ref, metadata)

    return _record
