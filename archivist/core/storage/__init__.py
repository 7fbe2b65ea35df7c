"""
Storage package: object storage access and local archive scratch files.
"""

from .archive_accumulator import ArchiveAccumulator
from .object_source import (
    DurableStorage,
    ObjectNotFoundError,
    ObjectPermissionError,
    ObjectReadError,
    ObjectSource,
    ObjectSourceError,
)

__all__ = [
    "ArchiveAccumulator",
    "DurableStorage",
    "ObjectNotFoundError",
    "ObjectPermissionError",
    "ObjectReadError",
    "ObjectSource",
    "ObjectSourceError",
]
