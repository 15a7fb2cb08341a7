"""Persistent local state: the map registry and the metadata cache."""

from synthsync.store.local_store import LocalStore, MapRecord
from synthsync.store.metadata_cache import CachedMetadata, MetadataCache

__all__ = [
    "CachedMetadata",
    "LocalStore",
    "MapRecord",
    "MetadataCache",
]
