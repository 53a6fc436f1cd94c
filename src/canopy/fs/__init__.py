"""File store layer — tree metadata, trash, share links, cache, locks."""

from canopy.fs.blobs import LocalBlobStore
from canopy.fs.cache import (
    MISS,
    CacheCoherencyLayer,
    CacheKeys,
    CacheScopes,
    MemoryCacheBackend,
    RedisCacheBackend,
    ttl_for_expiry,
)
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
from canopy.fs.metadata import MetadataService
from canopy.fs.protocol import AuditSink, BlobStore, CacheBackend
from canopy.fs.sharing import ShareLinkRegistry
from canopy.fs.trash import TrashService
from canopy.fs.types import DeleteResult, FileInfo, ShareOutcome, ShareResolution, SweepResult

__all__ = [
    "MISS",
    "AuditSink",
    "BlobStore",
    "CacheBackend",
    "CacheCoherencyLayer",
    "CacheKeys",
    "CacheScopes",
    "CanopyError",
    "ConflictError",
    "DeleteResult",
    "ErrorKind",
    "ExpiredError",
    "FileInfo",
    "FileStore",
    "InvalidParentError",
    "LocalBlobStore",
    "LockKey",
    "MemoryCacheBackend",
    "MetadataService",
    "NotFoundError",
    "OperationSerializer",
    "PermissionDeniedError",
    "RedisCacheBackend",
    "ShareLinkRegistry",
    "ShareOutcome",
    "ShareResolution",
    "SweepResult",
    "TransientStoreError",
    "TrashService",
    "ttl_for_expiry",
]
