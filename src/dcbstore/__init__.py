"""Append-only event store with Dynamic Consistency Boundaries.

Public API:
- EventStore: read() and conditional append()
- Event, NewEvent, Query, AppendCondition, AppendResult: data model
- matches: in-process query predicate
- StoreSettings, open_store: configuration
"""

from .backends import Backend, InMemoryBackend, SqliteBackend
from .config import StoreSettings, open_store
from .errors import (
    ConditionDeniedError,
    DCBError,
    EventValidationError,
    StorageError,
    TransientConflictError,
)
from .models import AppendCondition, AppendResult, Event, NewEvent, Query
from .query import highest_sequence, matches
from .store import EventStore

__all__ = [
    "AppendCondition",
    "AppendResult",
    "Backend",
    "ConditionDeniedError",
    "DCBError",
    "Event",
    "EventStore",
    "EventValidationError",
    "InMemoryBackend",
    "NewEvent",
    "Query",
    "SqliteBackend",
    "StorageError",
    "StoreSettings",
    "TransientConflictError",
    "highest_sequence",
    "matches",
    "open_store",
]
