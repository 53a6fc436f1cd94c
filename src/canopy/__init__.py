"""Canopy: multi-tenant hierarchical file store.

Per-user file trees, tokenized share links over subtrees, and a trash
with restore, on SQL with a lookaside cache.
"""

__version__ = "0.1.0"

from canopy._canopy_async import CanopyAsync
from canopy.config import CanopySettings
from canopy.events import AuditEvent, EventBus, EventType, Outcome
from canopy.fs.blobs import LocalBlobStore
from canopy.fs.cache import CacheCoherencyLayer, MemoryCacheBackend, RedisCacheBackend
from canopy.fs.exceptions import (
    CanopyError,
    ConflictError,
    ErrorKind,
    ExpiredError,
    InvalidParentError,
    NotFoundError,
    PermissionDeniedError,
    TransientStoreError,
)
from canopy.fs.file_store import FileStore
from canopy.fs.locks import LockKey, OperationSerializer
from canopy.fs.protocol import AuditSink, BlobStore, CacheBackend
from canopy.fs.types import DeleteResult, FileInfo, ShareOutcome, ShareResolution, SweepResult
from canopy.tasks import PeriodicTask

__all__ = [
    "AuditEvent",
    "AuditSink",
    "BlobStore",
    "CacheBackend",
    "CacheCoherencyLayer",
    "CanopyAsync",
    "CanopyError",
    "CanopySettings",
    "ConflictError",
    "DeleteResult",
    "ErrorKind",
    "EventBus",
    "EventType",
    "ExpiredError",
    "FileInfo",
    "FileStore",
    "InvalidParentError",
    "LocalBlobStore",
    "LockKey",
    "MemoryCacheBackend",
    "NotFoundError",
    "OperationSerializer",
    "Outcome",
    "PeriodicTask",
    "PermissionDeniedError",
    "RedisCacheBackend",
    "ShareOutcome",
    "ShareResolution",
    "SweepResult",
    "TransientStoreError",
    "__version__",
]
