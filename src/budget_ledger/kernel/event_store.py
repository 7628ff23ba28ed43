"""
SQLite Event Store - Append-only event log with idempotency

The event store is the source of truth for the entire ledger. It provides:
- Append-only semantics (events never modified or deleted)
- Idempotency via command_id (same command = same events)
- Optimistic locking via stream versioning
- Atomic multi-stream appends (a transfer debits and credits together or not at all)
- Deterministic replay capability

Fun fact: The append-only log pattern is one of the oldest database techniques,
dating back to the 1960s IMS database. Accountants were doing it with ink long before!
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from budget_ledger.kernel.errors import EventStoreError, StreamVersionConflict
from budget_ledger.kernel.events import Event, StreamAppend
from budget_ledger.kernel.logging import get_logger
from budget_ledger.kernel.metrics import events_appended_total, stream_version_conflicts_total
from budget_ledger.kernel.retry import retry_on_sqlite_lock

logger = get_logger(__name__)

_EVENT_COLUMNS = """
    event_id, stream_id, stream_type, version,
    command_id, event_type, occurred_at, actor_id, payload_json
"""


class SQLiteEventStore:
    """
    SQLite-based event store with append-only semantics

    This implementation uses SQLite with WAL (Write-Ahead Logging) mode
    for crash safety and good concurrent read performance. Writers take
    the database write lock up front (BEGIN IMMEDIATE) so version checks
    and inserts happen under the same lock.

    Schema:
    - events table: append-only event log
    - Unique constraints: (stream_id, version)
    - Indices: stream_id, event_type, occurred_at, command_id
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0) -> None:
        """
        Initialize event store with SQLite database

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a connection waits for the write lock
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        """Create tables and indices if they don't exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")  # Enable WAL mode for safety
            conn.execute("PRAGMA synchronous=NORMAL")  # Balance safety and performance

            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    event_id TEXT PRIMARY KEY,
                    stream_id TEXT NOT NULL,
                    stream_type TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    command_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    actor_id TEXT,
                    payload_json TEXT NOT NULL,

                    UNIQUE(stream_id, version)
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_stream "
                "ON events(stream_id, version)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_type " "ON events(event_type)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_time " "ON events(occurred_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_command " "ON events(command_id)"
            )

            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for read connections

        Ensures connections are properly closed.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for a single write transaction

        Takes the write lock immediately, commits when the block exits
        normally and rolls back on any exception.
        """
        conn = sqlite3.connect(
            str(self.db_path), timeout=self.busy_timeout, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @retry_on_sqlite_lock()
    def append_streams(self, appends: list[StreamAppend]) -> list[Event]:
        """
        Atomically append events to one or more streams

        This is the core write operation. It ensures:
        1. Idempotency: a command_id already in the log returns its events
        2. Consistency: every stream version must match its expected version
        3. Atomicity: all events of all streams append together or none do

        Streams are checked and written in lexicographic stream_id order, so
        two writers touching the same pair of streams always contend in the
        same order.

        Args:
            appends: Planned writes, at most one per stream

        Returns:
            The appended events (or the previously stored ones if idempotent)

        Raises:
            StreamVersionConflict: If any stream version doesn't match expected
            EventStoreError: On duplicate streams or other database errors
        """
        appends = [a for a in appends if a.events]
        if not appends:
            return []

        stream_ids = [a.stream_id for a in appends]
        if len(set(stream_ids)) != len(stream_ids):
            raise EventStoreError(f"Duplicate streams in one append: {sorted(stream_ids)}")

        ordered = sorted(appends, key=lambda a: a.stream_id)
        command_id = ordered[0].events[0].command_id

        try:
            with self._write_transaction() as conn:
                # Command already processed - this is SUCCESS (idempotency)
                existing = self._events_by_command_id(conn, command_id)
                if existing:
                    return existing

                for planned in ordered:
                    current_version = self._get_stream_version(conn, planned.stream_id)
                    if current_version != planned.expected_version:
                        raise StreamVersionConflict(
                            planned.stream_id, planned.expected_version, current_version
                        )

                written: list[Event] = []
                for planned in ordered:
                    for event in planned.events:
                        self._insert_event(conn, event)
                        written.append(event)

        except StreamVersionConflict as e:
            stream_version_conflicts_total.labels(
                stream_type=self._stream_type_of(ordered, e.stream_id)
            ).inc()
            raise

        except sqlite3.IntegrityError as e:
            error_msg = str(e).lower()
            if "stream_id" in error_msg and "version" in error_msg:
                # Lost a race on UNIQUE(stream_id, version)
                raise StreamVersionConflict(
                    ordered[0].stream_id,
                    ordered[0].expected_version,
                    self.get_stream_version(ordered[0].stream_id),
                ) from e
            raise EventStoreError(f"Failed to append events: {e}") from e

        for event in written:
            events_appended_total.labels(
                stream_type=event.stream_type, event_type=event.event_type
            ).inc()

        logger.debug(
            "Events appended",
            streams=[a.stream_id for a in ordered],
            event_count=len(written),
        )
        return written

    def _insert_event(self, conn: sqlite3.Connection, event: Event) -> None:
        """Insert a single event row within an open transaction"""
        conn.execute(
            f"INSERT INTO events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                event.event_id,
                event.stream_id,
                event.stream_type,
                event.version,
                event.command_id,
                event.event_type,
                event.occurred_at.isoformat(),
                event.actor_id,
                json.dumps(event.payload),
            ),
        )

    @staticmethod
    def _stream_type_of(appends: list[StreamAppend], stream_id: str) -> str:
        for planned in appends:
            if planned.stream_id == stream_id:
                return planned.events[0].stream_type
        return "unknown"

    def load_stream(self, stream_id: str, from_version: int = 0) -> list[Event]:
        """
        Load events for a stream in version order

        This is used to reconstruct aggregate state by replaying events.

        Args:
            stream_id: Aggregate root identifier
            from_version: Only return events with a version above this one

        Returns:
            List of events in version order (empty if stream doesn't exist)
        """
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM events
                WHERE stream_id = ? AND version > ?
                ORDER BY version ASC
            """,
                (stream_id, from_version),
            )

            return [self._row_to_event(row) for row in cursor.fetchall()]

    def load_all_events(self, limit: int | None = None) -> list[Event]:
        """
        Load events in insertion order (for projection rebuilding)

        Args:
            limit: Maximum number of events to return, or None for all

        Returns:
            List of events in the order they were committed
        """
        with self._connect() as conn:
            query = f"SELECT {_EVENT_COLUMNS} FROM events ORDER BY rowid ASC"
            if limit:
                query += f" LIMIT {int(limit)}"
            cursor = conn.execute(query)
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def query_events(
        self,
        *,
        stream_type: str | None = None,
        event_type: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """
        Query events by various criteria

        Args:
            stream_type: Filter by stream type (e.g., "budget_code", "approval_chain")
            event_type: Filter by event type (e.g., "AllocationReleased")
            from_time: Events after this time (inclusive)
            to_time: Events before this time (inclusive)
            limit: Maximum number of events to return

        Returns:
            List of matching events in chronological order
        """
        with self._connect() as conn:
            conditions = []
            params = []

            if stream_type:
                conditions.append("stream_type = ?")
                params.append(stream_type)

            if event_type:
                conditions.append("event_type = ?")
                params.append(event_type)

            if from_time:
                conditions.append("occurred_at >= ?")
                params.append(from_time.isoformat())

            if to_time:
                conditions.append("occurred_at <= ?")
                params.append(to_time.isoformat())

            where_clause = " AND ".join(conditions) if conditions else "1=1"

            query = f"""
                SELECT {_EVENT_COLUMNS}
                FROM events
                WHERE {where_clause}
                ORDER BY occurred_at ASC, rowid ASC
            """

            if limit:
                query += f" LIMIT {int(limit)}"

            cursor = conn.execute(query, params)
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def get_stream_version(self, stream_id: str) -> int:
        """
        Get current version of a stream

        Args:
            stream_id: Aggregate root identifier

        Returns:
            Current stream version (0 if stream doesn't exist)
        """
        with self._connect() as conn:
            return self._get_stream_version(conn, stream_id)

    def _get_stream_version(self, conn: sqlite3.Connection, stream_id: str) -> int:
        """Internal helper to get stream version within a connection"""
        cursor = conn.execute(
            "SELECT MAX(version) FROM events WHERE stream_id = ?",
            (stream_id,),
        )
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def _events_by_command_id(
        self, conn: sqlite3.Connection, command_id: str
    ) -> list[Event]:
        """Get events for a command (for idempotency checking)"""
        cursor = conn.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM events
            WHERE command_id = ?
            ORDER BY stream_id ASC, version ASC
        """,
            (command_id,),
        )
        return [self._row_to_event(row) for row in cursor.fetchall()]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        """Convert SQLite row to Event object"""
        return Event(
            event_id=row["event_id"],
            stream_id=row["stream_id"],
            stream_type=row["stream_type"],
            version=row["version"],
            command_id=row["command_id"],
            event_type=row["event_type"],
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            actor_id=row["actor_id"],
            payload=json.loads(row["payload_json"]),
        )

    def count_events(self) -> int:
        """Get total number of events in store"""
        with self._connect() as conn:
            cursor = conn.execute("SELECT COUNT(*) FROM events")
            return cursor.fetchone()[0]

    def count_streams(self) -> int:
        """Get total number of distinct streams"""
        with self._connect() as conn:
            cursor = conn.execute("SELECT COUNT(DISTINCT stream_id) FROM events")
            return cursor.fetchone()[0]
