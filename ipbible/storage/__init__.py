"""Persistence collaborators: the record store and the object store."""

from __future__ import annotations

from .object_store import LocalObjectStore, ObjectStoreError, mint_key  # noqa: F401
from .record_store import (  # noqa: F401
    ConcurrentUpdateError,
    RecordStore,
    RecordStoreError,
    VersionedValue,
)

__all__ = [
    "ConcurrentUpdateError",
    "LocalObjectStore",
    "ObjectStoreError",
    "RecordStore",
    "RecordStoreError",
    "VersionedValue",
    "mint_key",
]
