"""
Object Source and durable storage contracts.

The archive build controller only needs two narrow capabilities from object
storage:

- ObjectSource: read the bytes of a content-addressed object by key
- DurableStorage: persist a finished archive under a path and return its etag

Production code uses the MinIO adapters in ``minio_service``; tests plug in
in-memory implementations. Adapters translate their backend's exceptions into
the ObjectSourceError hierarchy below so the failure classifier can work on
stable types rather than backend-specific error codes.
"""

from typing import BinaryIO, Protocol, runtime_checkable


class ObjectSourceError(Exception):
    """Base class for object storage failures surfaced to archive builds."""

    def __init__(self, message: str, key: str = ""):
        super().__init__(message)
        self.key = key


class ObjectReadError(ObjectSourceError):
    """A get/read against object storage failed (network, 5xx, truncated body)."""


class ObjectNotFoundError(ObjectReadError):
    """The requested key does not exist. Classified as a read failure."""


class ObjectPermissionError(ObjectSourceError):
    """Object storage denied access to the requested key."""


@runtime_checkable
class ObjectSource(Protocol):
    def exists(self, key: str) -> bool:
        ...

    def get_bytes(self, key: str) -> bytes:
        ...


@runtime_checkable
class DurableStorage(Protocol):
    def put(self, path: str, stream: BinaryIO, length: int) -> str:
        ...

    def delete(self, path: str) -> bool:
        ...
