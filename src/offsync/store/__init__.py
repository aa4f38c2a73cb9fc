"""Durable tier for cache entries, sync items and sync sessions."""

from offsync.store.database import create_memory_engine, get_store_engine, init_store_db
from offsync.store.entry_store import EntryStore, Scan, Table

__all__ = [
    "EntryStore",
    "Scan",
    "Table",
    "create_memory_engine",
    "get_store_engine",
    "init_store_db",
]
