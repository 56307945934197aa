"""Persistence for known validators and dynamic sources.

Example usage:
    from unl.storage import SqliteStore

    store = SqliteStore("~/.unl/validators.sqlite")
    store.open()
    records = store.load_validators()
"""

from .store import MemoryStore, SqliteStore, Store, StoreError

__all__ = [
    "Store",
    "StoreError",
    "SqliteStore",
    "MemoryStore",
]
