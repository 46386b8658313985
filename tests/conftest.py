"""Shared test fixtures and helpers for dcbstore tests."""

import tempfile
from pathlib import Path

import pytest

from dcbstore.backends import InMemoryBackend, SqliteBackend
from dcbstore.models import NewEvent, Query
from dcbstore.store import EventStore


BACKEND_KINDS = ["memory", "serialized", "serializable"]


# --- Fixtures ---


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for database files.

    Yields a Path to a temporary directory that's cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(params=BACKEND_KINDS)
def store(request, temp_dir):
    """Provide an empty EventStore on every backend/strategy combination."""
    event_store = make_store(request.param, temp_dir)
    yield event_store
    event_store.close()


@pytest.fixture(params=["serialized", "serializable"])
def sqlite_store(request, temp_dir):
    """Provide an empty SQLite-backed EventStore for each write strategy."""
    event_store = make_store(request.param, temp_dir)
    yield event_store
    event_store.close()


# --- Helper Functions (not fixtures) ---


def make_store(kind: str, directory: Path, **kwargs) -> EventStore:
    """Create a store of the given kind ("memory" or a SQLite strategy)."""
    if kind == "memory":
        return EventStore(InMemoryBackend())
    return EventStore(SqliteBackend(directory / "events.db", strategy=kind, **kwargs))


def course_event(event_type: str, course_id: str, data: bytes = b"") -> NewEvent:
    """Helper to create a course event tagged with its courseId."""
    return NewEvent(type=event_type, tags={"courseId": course_id}, data=data)


def course_query(course_id: str) -> Query:
    """The query a course-capacity decision reads with."""
    return Query(
        types=frozenset({"CourseDefined", "CourseCapacityChanged"}),
        tags={"courseId": course_id},
    )
