"""Remote store adapters consumed by the sync core."""

from fitsync.adapters.base import EntityAdapter, Filter, ListQuery, RemoteStore
from fitsync.adapters.memory import MemoryStore

__all__ = ["EntityAdapter", "Filter", "ListQuery", "MemoryStore", "RemoteStore"]
