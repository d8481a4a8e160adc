"""
SQLite-backed offline queue of pending writes.

Writes accepted while the backend is unreachable are recorded here and
replayed in enqueue order once connectivity returns. Durability across
restarts is a single global switch: the queue either lives in a database file
shared by every tag, or in memory for the lifetime of the process.
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from tagsync.errors import AuthError, NetworkError, QueuePersistenceError, TagSyncError
from tagsync.models.pending_write import PendingWrite, WriteKind
from tagsync.models.values import json_serialize_fallback

logger = logging.getLogger(__name__)


@dataclass
class DrainStats:
    """Outcome of one drain pass."""
    applied: int = 0
    failed: int = 0
    remaining: int = 0
    halted_by: Optional[str] = None
    failures: List[Dict[str, Any]] = field(default_factory=list)


class OfflineQueue:
    """
    Ordered log of writes waiting for the backend.

    This class provides:
    - Persistent or in-memory storage of pending writes
    - Replay in sequence order, which preserves per-tag FIFO
    - Thread-safe operations, with at most one drain at a time
    - Removal of writes the backend rejects, so they never block the rest
    """

    DEFAULT_DB_PATH = "tagsync_queue.db"

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the offline queue.

        Args:
            db_path: Path to the SQLite database file. If None, uses default.
                     Use ":memory:" for a queue that does not survive restarts.
        """
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._is_memory = self.db_path == ":memory:"
        self._shared_conn: Optional[sqlite3.Connection] = None
        self._init_database()

    @property
    def persistent(self) -> bool:
        return not self._is_memory

    def _init_database(self) -> None:
        """Initialize the SQLite database schema."""
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS pending_writes (
                            sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                            tag TEXT NOT NULL,
                            kind TEXT NOT NULL,
                            value TEXT,
                            enqueued_at TEXT NOT NULL,
                            retry_count INTEGER DEFAULT 0,
                            last_error TEXT
                        )
                    """)
                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_pending_tag
                        ON pending_writes(tag, sequence)
                    """)
            finally:
                self._release(conn)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        # For in-memory databases, reuse the same connection
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:", check_same_thread=False)
                self._shared_conn.row_factory = sqlite3.Row
            return self._shared_conn

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _release(self, conn: sqlite3.Connection) -> None:
        if not self._is_memory:
            conn.close()

    @staticmethod
    def _row_to_write(row: sqlite3.Row) -> PendingWrite:
        value = row['value']
        return PendingWrite(
            tag=row['tag'],
            kind=WriteKind(row['kind']),
            value=json.loads(value) if value is not None else None,
            sequence=row['sequence'],
            enqueued_at=row['enqueued_at'],
            retry_count=row['retry_count'],
            last_error=row['last_error']
        )

    def enqueue(self, write: PendingWrite) -> PendingWrite:
        """
        Append a write to the end of the queue.

        Args:
            write: The write to record; sequence and enqueued_at are assigned

        Returns:
            The recorded write

        Raises:
            QueuePersistenceError: If the write could not be stored
        """
        try:
            payload = None if write.value is None else json.dumps(write.value, default=json_serialize_fallback)
        except (TypeError, ValueError) as e:
            raise QueuePersistenceError(f"value for tag '{write.tag}' cannot be queued: {e}") from e

        enqueued_at = datetime.now(timezone.utc).isoformat()
        try:
            with self._lock:
                conn = self._get_connection()
                try:
                    with conn:
                        cursor = conn.execute(
                            """
                            INSERT INTO pending_writes (tag, kind, value, enqueued_at)
                            VALUES (?, ?, ?, ?)
                            """,
                            (write.tag, write.kind.value, payload, enqueued_at)
                        )
                    sequence = cursor.lastrowid
                finally:
                    self._release(conn)
        except sqlite3.Error as e:
            logger.error(f"Could not queue {write.kind.value} for '{write.tag}': {e}")
            raise QueuePersistenceError(f"offline queue rejected write for tag '{write.tag}': {e}") from e

        logger.debug(f"Queued {write.kind.value} for '{write.tag}' as #{sequence}")
        return PendingWrite(
            tag=write.tag,
            kind=write.kind,
            value=write.value,
            sequence=sequence,
            enqueued_at=enqueued_at
        )

    def pending(self, tag: Optional[str] = None, limit: int = 1000) -> List[PendingWrite]:
        """
        Get queued writes in sequence order.

        Args:
            tag: Only return writes for this tag
            limit: Maximum number of writes to return

        Returns:
            List of pending writes, oldest first
        """
        query = "SELECT * FROM pending_writes"
        params: tuple = ()
        if tag is not None:
            query += " WHERE tag = ?"
            params = (tag,)
        query += " ORDER BY sequence ASC LIMIT ?"
        params += (limit,)

        with self._lock:
            conn = self._get_connection()
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                self._release(conn)
        return [self._row_to_write(row) for row in rows]

    def has_pending(self, tag: str) -> bool:
        with self._lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT 1 FROM pending_writes WHERE tag = ? LIMIT 1", (tag,)
                ).fetchone()
            finally:
                self._release(conn)
        return row is not None

    def count_pending(self) -> int:
        """
        Get the number of queued writes.

        Returns:
            Number of pending writes
        """
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute("SELECT COUNT(*) AS count FROM pending_writes").fetchone()['count']
            finally:
                self._release(conn)

    def remove(self, sequence: int) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute("DELETE FROM pending_writes WHERE sequence = ?", (sequence,))
            finally:
                self._release(conn)

    def mark_failed(self, sequence: int, error: str) -> None:
        """
        Record a failed replay attempt on a write that stays queued.

        Args:
            sequence: The sequence number of the write
            error: The error message from the failed attempt
        """
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute(
                        """
                        UPDATE pending_writes
                        SET retry_count = retry_count + 1,
                            last_error = ?
                        WHERE sequence = ?
                        """,
                        (error, sequence)
                    )
            finally:
                self._release(conn)

    def drain(
        self,
        apply: Callable[[PendingWrite], Any],
        on_success: Optional[Callable[[PendingWrite, Any], None]] = None,
        on_failure: Optional[Callable[[PendingWrite, Exception], None]] = None
    ) -> DrainStats:
        """
        Replay queued writes in sequence order.

        A NetworkError or AuthError from ``apply`` means the backend is not
        usable right now: the drain stops and that write, along with every
        later one, stays queued. Any other exception is permanent: the
        write is dropped from the queue, reported through ``on_failure`` and
        the drain moves on.

        Args:
            apply: Applies one write to the backend and returns its result
            on_success: Called with the write and the result of ``apply``
            on_failure: Called with the write and the permanent error

        Returns:
            Statistics for this pass
        """
        stats = DrainStats()
        with self._drain_lock:
            writes = self.pending(limit=1000000)
            if writes:
                logger.info(f"Replaying {len(writes)} queued writes")

            for write in writes:
                try:
                    result = apply(write)
                except (NetworkError, AuthError) as e:
                    self.mark_failed(write.sequence, str(e))
                    stats.halted_by = type(e).__name__
                    logger.warning(f"Replay halted at #{write.sequence} ({write.tag}): {e}")
                    break
                except Exception as e:
                    # Unmapped errors from the adapter are permanent too
                    if not isinstance(e, TagSyncError):
                        logger.exception(f"Unexpected error replaying #{write.sequence}")
                    self.remove(write.sequence)
                    stats.failed += 1
                    stats.failures.append({'sequence': write.sequence, 'tag': write.tag, 'error': str(e)})
                    logger.error(f"Dropping queued {write.kind.value} #{write.sequence} for '{write.tag}': {e}")
                    self._notify(on_failure, write, e)
                    continue

                self.remove(write.sequence)
                stats.applied += 1
                self._notify(on_success, write, result)

            stats.remaining = self.count_pending()
        return stats

    @staticmethod
    def _notify(callback: Optional[Callable], write: PendingWrite, outcome: Any) -> None:
        if callback is None:
            return
        try:
            callback(write, outcome)
        except Exception as e:
            logger.error(f"Error in drain callback for #{write.sequence}: {e}")

    def clear(self) -> int:
        """
        Drop every queued write.

        Returns:
            Number of writes deleted
        """
        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    cursor = conn.execute("DELETE FROM pending_writes")
                return cursor.rowcount
            finally:
                self._release(conn)

    def close(self) -> None:
        """Close the queue and any open connections."""
        with self._lock:
            if self._shared_conn is not None:
                self._shared_conn.close()
                self._shared_conn = None
