"""Storage adapters implementing core ports."""

from obsfly.adapters.storage.in_memory import InMemoryEventStore
from obsfly.adapters.storage.sqlite_events import SQLiteEventStore

__all__ = [
    "InMemoryEventStore",
    "SQLiteEventStore",
]
