"""Append-only event log backed by SQLite.

Two write strategies share one schema:

- "serialized": each append starts with BEGIN IMMEDIATE, taking SQLite's
  database-wide write lock before the condition is checked. The first row
  goes in through a conditional INSERT ... SELECT ... WHERE <guard>; zero
  rows affected means the condition failed.
- "serializable": each append starts with BEGIN DEFERRED, reads the
  high-water mark (pinning a WAL snapshot) and only then writes. If another
  writer committed after that snapshot, SQLite refuses the upgrade to a
  write transaction with SQLITE_BUSY; the append is rolled back and
  reported as a transient conflict.

Readers use WAL snapshots and are never blocked by writers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterator, Optional

from ..condition import compile_guard, evaluate
from ..constants import (
    BUSY_TIMEOUT_MS,
    DEFAULT_STRATEGY,
    READ_BATCH_SIZE,
    SCHEMA_VERSION,
    STRATEGY_SERIALIZABLE,
    STRATEGY_SERIALIZED,
    WRITE_STRATEGIES,
)
from ..errors import StorageError
from ..models import AppendCondition, AppendResult, Event, NewEvent, Query, utc_now
from ..query import compile_query
from .base import Backend

logger = logging.getLogger(__name__)

# Primary result codes; extended codes (e.g. SQLITE_BUSY_SNAPSHOT) share the low byte
_SQLITE_BUSY = 5
_SQLITE_LOCKED = 6

_EVENT_COLUMNS = "e.sequence, e.id, e.type, e.tags, e.data, e.metadata, e.recorded_at"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS events (
        sequence INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        type TEXT NOT NULL,
        tags TEXT NOT NULL,
        data BLOB NOT NULL,
        metadata BLOB,
        recorded_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_events_type ON events(type, sequence);

    CREATE TABLE IF NOT EXISTS event_tags (
        sequence INTEGER NOT NULL REFERENCES events(sequence),
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (sequence, key)
    ) WITHOUT ROWID;

    CREATE INDEX IF NOT EXISTS idx_event_tags_lookup ON event_tags(key, value, sequence);
"""


def _is_transient(error: sqlite3.OperationalError) -> bool:
    """True if SQLite refused the operation because of another connection."""
    code = getattr(error, "sqlite_errorcode", None)
    if code is not None:
        return code & 0xFF in (_SQLITE_BUSY, _SQLITE_LOCKED)
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _encode_tags(tags: dict[str, str]) -> str:
    return json.dumps(tags, sort_keys=True, separators=(",", ":"))


class SqliteBackend(Backend):
    """Event log in a single SQLite database file (WAL mode)."""

    def __init__(
        self,
        db_path: Path,
        strategy: str = DEFAULT_STRATEGY,
        busy_timeout_ms: int = BUSY_TIMEOUT_MS,
        read_batch_size: int = READ_BATCH_SIZE,
    ):
        """Initialize the backend and create the schema if needed.

        Args:
            db_path: Path to the database file (parent dirs are created)
            strategy: "serialized" or "serializable"
            busy_timeout_ms: How long to wait for SQLite's write lock
            read_batch_size: Rows fetched per round-trip in scan()
        """
        if strategy not in WRITE_STRATEGIES:
            raise ValueError(
                f"Unknown write strategy {strategy!r}; expected one of {WRITE_STRATEGIES}"
            )
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.strategy = strategy
        self.busy_timeout_ms = busy_timeout_ms
        self.read_batch_size = read_batch_size

        self._local = threading.local()
        # (owning thread, connection); entries of finished threads are closed lazily
        self._connections: list[tuple[threading.Thread, sqlite3.Connection]] = []
        self._connections_lock = threading.Lock()
        self._init_db()

    # ─────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection; transactions are explicit."""
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            # WAL lets readers proceed while a writer holds the lock
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open event store at {self.db_path}: {e}") from e
        return conn

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create this thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._connections_lock:
                self._release_finished_threads()
                self._connections.append((threading.current_thread(), conn))
        return conn

    def _release_finished_threads(self) -> None:
        """Close connections whose owning thread has exited (lock held)."""
        live = []
        for thread, conn in self._connections:
            if thread.is_alive():
                live.append((thread, conn))
            else:
                conn.close()
        if len(live) < len(self._connections):
            closed = len(self._connections) - len(live)
            logger.debug(f"Closed {closed} connections of finished threads")
        self._connections = live

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_conn()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    created_at TEXT DEFAULT (datetime('now'))
                )
            """)
            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
            version = row[0] if row else None
            if version is None:
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                    (SCHEMA_VERSION,),
                )
            elif version > SCHEMA_VERSION:
                raise StorageError(
                    f"Event store schema version {version} is newer than supported "
                    f"version {SCHEMA_VERSION}"
                )
            elif version < SCHEMA_VERSION:
                logger.warning(f"Schema version {version} detected, may need migration")

            conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot initialize event store schema: {e}") from e

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        """Convert database row to Event."""
        return Event(
            sequence=row["sequence"],
            id=row["id"],
            type=row["type"],
            tags=json.loads(row["tags"]),
            data=bytes(row["data"]),
            metadata=bytes(row["metadata"]) if row["metadata"] is not None else None,
            recorded_at=row["recorded_at"],
        )

    def scan(
        self,
        query: Query,
        from_sequence: int = 0,
        limit: Optional[int] = None,
        tolerant: bool = True,
    ) -> Iterator[Event]:
        where, params = compile_query(query)
        sql = (
            f"SELECT {_EVENT_COLUMNS} FROM events e"
            f" WHERE e.sequence >= ? AND {where}"
            " ORDER BY e.sequence"
        )
        args: list = [from_sequence, *params]
        if limit is not None:
            sql += " LIMIT ?"
            args.append(limit)

        # Own connection: the statement pins one WAL snapshot until it finishes,
        # and the iterator may be consumed on another thread
        conn = self._connect()
        skipped = 0
        try:
            cursor = conn.execute(sql, args)
            while True:
                rows = cursor.fetchmany(self.read_batch_size)
                if not rows:
                    break
                for row in rows:
                    try:
                        event = self._row_to_event(row)
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                        if not tolerant:
                            raise StorageError(
                                f"Malformed event at sequence {row['sequence']}: {e}"
                            ) from e
                        skipped += 1
                        logger.warning(f"Skipping malformed event {row['sequence']}: {e}")
                        continue
                    yield event
        except sqlite3.Error as e:
            raise StorageError(f"Read failed: {e}") from e
        finally:
            conn.close()
            if skipped:
                logger.warning(f"Skipped {skipped} malformed rows during read")

    def highest_sequence(self, query: Query) -> int:
        where, params = compile_query(query)
        try:
            row = self._get_conn().execute(
                f"SELECT COALESCE(MAX(e.sequence), 0) FROM events e WHERE {where}",
                params,
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Query failed: {e}") from e
        return row[0]

    def count(self) -> int:
        try:
            return self._get_conn().execute("SELECT COUNT(*) FROM events").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"Count failed: {e}") from e

    # ─────────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────────

    def run_atomic(
        self, batch: list[NewEvent], condition: Optional[AppendCondition] = None
    ) -> AppendResult:
        conn = self._get_conn()
        begin = "BEGIN IMMEDIATE" if self.strategy == STRATEGY_SERIALIZED else "BEGIN DEFERRED"
        try:
            conn.execute(begin)
            if self.strategy == STRATEGY_SERIALIZED:
                result = self._append_serialized(conn, batch, condition)
            else:
                result = self._append_serializable(conn, batch, condition)

            if result.appended:
                conn.execute("COMMIT")
            else:
                conn.execute("ROLLBACK")
            return result
        except sqlite3.OperationalError as e:
            self._rollback(conn)
            if self.strategy == STRATEGY_SERIALIZABLE and _is_transient(e):
                logger.debug(f"Serializable append aborted by concurrent writer: {e}")
                return AppendResult.transient()
            raise StorageError(f"Append failed: {e}") from e
        except sqlite3.Error as e:
            self._rollback(conn)
            raise StorageError(f"Append failed: {e}") from e
        except BaseException:
            self._rollback(conn)
            raise

    def _rollback(self, conn: sqlite3.Connection) -> None:
        # SQLite may already have rolled back after a failed statement
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _append_serialized(
        self,
        conn: sqlite3.Connection,
        batch: list[NewEvent],
        condition: Optional[AppendCondition],
    ) -> AppendResult:
        """Write lock already held: guard the first insert, then insert the rest."""
        recorded_at = utc_now().isoformat()
        first_event, rest = batch[0], batch[1:]

        if condition is not None:
            guard_sql, guard_params = compile_guard(condition)
            cursor = conn.execute(
                "INSERT INTO events (id, type, tags, data, metadata, recorded_at)"
                f" SELECT ?, ?, ?, ?, ?, ? WHERE {guard_sql}",
                [*self._event_params(first_event, recorded_at), *guard_params],
            )
            if cursor.rowcount == 0:
                observed = self.highest_sequence(condition.fail_if_events_match)
                return evaluate(condition, observed).to_result()
            first = cursor.lastrowid
            self._insert_tags(conn, first, first_event)
        else:
            first = self._insert_event(conn, first_event, recorded_at)

        last = first
        for new in rest:
            last = self._insert_event(conn, new, recorded_at)

        logger.debug(f"Appended {len(batch)} events at {first}..{last}")
        return AppendResult.success(first, last)

    def _append_serializable(
        self,
        conn: sqlite3.Connection,
        batch: list[NewEvent],
        condition: Optional[AppendCondition],
    ) -> AppendResult:
        """Read the condition inside the snapshot, then upgrade to a write."""
        if condition is not None:
            where, params = compile_query(condition.fail_if_events_match)
            observed = conn.execute(
                f"SELECT COALESCE(MAX(e.sequence), 0) FROM events e WHERE {where}",
                params,
            ).fetchone()[0]
            verdict = evaluate(condition, observed)
            if not verdict.permit:
                return verdict.to_result()

        # First write: fails with SQLITE_BUSY if the snapshot above is stale
        recorded_at = utc_now().isoformat()
        first = last = self._insert_event(conn, batch[0], recorded_at)
        for new in batch[1:]:
            last = self._insert_event(conn, new, recorded_at)

        logger.debug(f"Appended {len(batch)} events at {first}..{last}")
        return AppendResult.success(first, last)

    def _event_params(self, event: NewEvent, recorded_at: str) -> list:
        return [
            event.id,
            event.type,
            _encode_tags(event.tags),
            event.data,
            event.metadata,
            recorded_at,
        ]

    def _insert_event(self, conn: sqlite3.Connection, event: NewEvent, recorded_at: str) -> int:
        cursor = conn.execute(
            """
            INSERT INTO events (id, type, tags, data, metadata, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            self._event_params(event, recorded_at),
        )
        sequence = cursor.lastrowid
        self._insert_tags(conn, sequence, event)
        return sequence

    def _insert_tags(self, conn: sqlite3.Connection, sequence: int, event: NewEvent) -> None:
        if not event.tags:
            return
        conn.executemany(
            "INSERT INTO event_tags (sequence, key, value) VALUES (?, ?, ?)",
            [(sequence, key, value) for key, value in event.tags.items()],
        )

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Close all connections opened by this backend.

        Forces a WAL checkpoint before closing to ensure all changes
        are written to the main database file.
        """
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for index, (_, conn) in enumerate(connections):
            try:
                if index == 0:
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            finally:
                conn.close()
        self._local = threading.local()

    def get_connection(self) -> sqlite3.Connection:
        """Get this thread's database connection (for inspection and tests)."""
        return self._get_conn()
