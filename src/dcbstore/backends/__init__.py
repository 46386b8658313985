"""Storage backends for the event store.

Public API:
- Backend: interface every backend implements
- InMemoryBackend: in-process log, one writer at a time
- SqliteBackend: SQLite log, "serialized" or "serializable" writes
"""

from .base import Backend
from .memory import InMemoryBackend
from .sqlite import SqliteBackend

__all__ = [
    "Backend",
    "InMemoryBackend",
    "SqliteBackend",
]
