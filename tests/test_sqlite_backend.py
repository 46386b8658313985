"""Tests for the SQLite backend."""

import sqlite3
import threading

import pytest

from dcbstore.backends import SqliteBackend
from dcbstore.errors import StorageError
from dcbstore.models import NewEvent, Query
from dcbstore.store import EventStore


def test_events_persist_across_reopen(temp_dir):
    """The log survives closing and reopening the database."""
    path = temp_dir / "events.db"
    with EventStore(SqliteBackend(path)) as store:
        store.append([NewEvent(type="CourseDefined", tags={"courseId": "c1"}, data=b"x")])

    with EventStore(SqliteBackend(path)) as store:
        events = list(store.read(Query(tags={"courseId": "c1"})))
        assert len(events) == 1
        assert events[0].data == b"x"
        assert store.append([NewEvent(type="Next")]).range == (2, 2)


def test_creates_parent_dirs(temp_dir):
    nested = temp_dir / "nested" / "dirs" / "events.db"
    backend = SqliteBackend(nested)
    assert nested.exists()
    backend.close()


def test_tags_are_indexed(temp_dir):
    """Every tag gets a row in the inverted index."""
    backend = SqliteBackend(temp_dir / "events.db")
    store = EventStore(backend)
    store.append([NewEvent(type="StudentSubscribed", tags={"courseId": "c1", "studentId": "s1"})])

    rows = backend.get_connection().execute(
        "SELECT sequence, key, value FROM event_tags ORDER BY key"
    ).fetchall()
    assert [tuple(r) for r in rows] == [(1, "courseId", "c1"), (1, "studentId", "s1")]
    store.close()


def test_sequences_never_reused(temp_dir):
    """A denied append does not consume or free sequence numbers."""
    from dcbstore.models import AppendCondition

    store = EventStore(SqliteBackend(temp_dir / "events.db"))
    store.append([NewEvent(type="A")])
    denied = store.append(
        [NewEvent(type="B")], AppendCondition(fail_if_events_match=Query(types={"A"}))
    )
    assert denied.denied
    assert store.append([NewEvent(type="C")]).range == (2, 2)
    store.close()


def test_unknown_strategy_rejected(temp_dir):
    with pytest.raises(ValueError, match="Unknown write strategy"):
        SqliteBackend(temp_dir / "events.db", strategy="optimistic")


def test_newer_schema_version_is_fatal(temp_dir):
    path = temp_dir / "events.db"
    SqliteBackend(path).close()

    conn = sqlite3.connect(path)
    conn.execute("INSERT INTO schema_version (version) VALUES (99)")
    conn.commit()
    conn.close()

    with pytest.raises(StorageError, match="newer than supported"):
        SqliteBackend(path)


# ─────────────────────────────────────────────────────────────────────────────
# Tolerant reads
# ─────────────────────────────────────────────────────────────────────────────


def _corrupt_second_row(backend: SqliteBackend) -> None:
    backend.get_connection().execute("UPDATE events SET tags = 'not json' WHERE sequence = 2")


def test_read_skips_malformed_row(temp_dir):
    """Valid events still load when one row is corrupt."""
    backend = SqliteBackend(temp_dir / "events.db")
    store = EventStore(backend)
    store.append([NewEvent(type="E") for _ in range(3)])
    _corrupt_second_row(backend)

    assert [e.sequence for e in store.read()] == [1, 3]
    store.close()


def test_strict_read_raises(temp_dir):
    backend = SqliteBackend(temp_dir / "events.db")
    store = EventStore(backend)
    store.append([NewEvent(type="E") for _ in range(3)])
    _corrupt_second_row(backend)

    iterator = store.read(tolerant=False)
    assert next(iterator).sequence == 1
    with pytest.raises(StorageError, match="Malformed event at sequence 2"):
        next(iterator)
    store.close()


def test_small_read_batches(temp_dir):
    """Reads page through the cursor without losing rows."""
    store = EventStore(SqliteBackend(temp_dir / "events.db", read_batch_size=2))
    store.append([NewEvent(type="E", tags={"n": str(i)}) for i in range(7)])
    assert [e.tags["n"] for e in store.read()] == [str(i) for i in range(7)]
    store.close()


# ─────────────────────────────────────────────────────────────────────────────
# Write strategies under a held write lock
# ─────────────────────────────────────────────────────────────────────────────


def _hold_write_lock(path) -> sqlite3.Connection:
    conn = sqlite3.connect(path, isolation_level=None)
    conn.execute("BEGIN IMMEDIATE")
    conn.execute("INSERT INTO events (id, type, tags, data, recorded_at) VALUES ('x', 'Other', '{}', x'', '')")
    return conn


def test_serializable_reports_transient_conflict(temp_dir):
    """Another writer holding the lock aborts a conditional serializable append."""
    from dcbstore.models import AppendCondition

    path = temp_dir / "events.db"
    store = EventStore(SqliteBackend(path, strategy="serializable", busy_timeout_ms=100))
    store.append([NewEvent(type="A")])

    blocker = _hold_write_lock(path)
    try:
        result = store.append(
            [NewEvent(type="A")],
            AppendCondition(fail_if_events_match=Query(types={"A"}), after=1),
        )
        assert result.conflict
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert store.count() == 1
    retry = store.append(
        [NewEvent(type="A")],
        AppendCondition(fail_if_events_match=Query(types={"A"}), after=1),
    )
    assert retry.appended
    store.close()


def test_serialized_lock_timeout_is_fatal(temp_dir):
    """Waiting past busy_timeout for the global write lock is a storage error."""
    path = temp_dir / "events.db"
    store = EventStore(SqliteBackend(path, strategy="serialized", busy_timeout_ms=100))

    blocker = _hold_write_lock(path)
    try:
        with pytest.raises(StorageError):
            store.append([NewEvent(type="A")])
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert store.count() == 0
    store.close()


def test_readers_not_blocked_by_writer(sqlite_store, temp_dir):
    """WAL readers see the committed prefix while another writer holds the lock."""
    sqlite_store.append([NewEvent(type="A")])

    blocker = _hold_write_lock(temp_dir / "events.db")
    try:
        assert [e.type for e in sqlite_store.read()] == ["A"]
        assert sqlite_store.highest_sequence() == 1
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()


def test_connections_of_finished_threads_are_released(sqlite_store):
    """A churning thread pool does not accumulate open connections."""
    backend = sqlite_store.backend

    def append_once(n):
        sqlite_store.append([NewEvent(type="Tick", tags={"n": str(n)})])

    for n in range(5):
        worker = threading.Thread(target=append_once, args=(n,))
        worker.start()
        worker.join()

    # main thread (schema setup) plus the most recent worker
    assert len(backend._connections) <= 2
    assert sqlite_store.count() == 5
