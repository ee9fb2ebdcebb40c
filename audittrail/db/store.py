"""
Audit Store Abstraction

This module defines the AuditStore interface and provides two implementations:
- InMemoryAuditStore: For development and testing
- PostgresAuditStore: For production with durability across restarts

The AuditStore is responsible for:
- Durable, all-or-nothing append of one entry
- Ordered reads (latest entry, lazy streams from an index)
- Refusing an entry whose sequence index is already taken

The ChainSequencer retains responsibility for:
- Owning the chain head
- Computing link hashes
- Serializing writers

APPEND CONTRACT:
    store.append(entry) either persists the full entry and returns it, or raises.
    It never returns after a partial write and never swallows a failure.
"""

from abc import ABC, abstractmethod
from importlib import resources
from threading import Lock
from typing import Any, Callable, Iterator, Optional
from uuid import UUID

import psycopg2
from psycopg2 import errorcodes
from psycopg2 import errors as pg_errors

from ..core.errors import (
    AuditStoreError,
    BootstrapAmbiguityError,
    LockTimeoutError,
    StaleHeadError,
    TransientStoreError,
)
from ..observability import get_logger
from ..schemas import AuditEntry

logger = get_logger(__name__)


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class AuditStore(ABC):
    """
    Abstract base class for audit entry storage.

    Implementations must ensure:
    1. Atomic append: the entry is visible in full or not at all
    2. No duplicate sequence indexes (StaleHeadError on conflict)
    3. No gaps: an append must be exactly one past the stored maximum
    4. Reads never block writers for longer than a single statement
    """

    @abstractmethod
    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Durably persist one entry.

        Raises:
            StaleHeadError: sequence index already taken by another writer
            TransientStoreError: storage temporarily unavailable
            AuditStoreError: the entry does not extend the stored chain
        """
        pass

    @abstractmethod
    def latest(self) -> Optional[AuditEntry]:
        """
        Return the entry with the highest sequence index, or None if empty.

        Raises:
            BootstrapAmbiguityError: two entries claim the maximal index
        """
        pass

    @abstractmethod
    def stream_from(
        self,
        sequence_index: int,
        until: Optional[int] = None,
    ) -> Iterator[AuditEntry]:
        """
        Lazily yield entries with index >= sequence_index, ascending.

        Args:
            sequence_index: First index to include
            until: Last index to include (inclusive), None for the current end

        Every call starts a fresh read, so the sequence is restartable.
        """
        pass

    @abstractmethod
    def get(self, sequence_index: int) -> Optional[AuditEntry]:
        """Return the entry at an index, or None."""
        pass

    @abstractmethod
    def first(self) -> Optional[AuditEntry]:
        """Return the entry with the lowest stored index, or None."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Number of stored entries."""
        pass

    @abstractmethod
    def purge_before(self, sequence_index: int) -> int:
        """
        ADMINISTRATIVE: delete every entry below an index.

        Only AuditTrail.purge_before() should call this, after checking the
        entry at sequence_index is a checkpoint.

        Returns:
            Number of entries removed
        """
        pass

    def close(self) -> None:
        """Release any held resources."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryAuditStore(AuditStore):
    """
    In-memory implementation of AuditStore.

    Suitable for:
    - Development
    - Testing (including simulated restarts: build a new sequencer on the same store)

    NOT suitable for:
    - Production (no durability)
    - Multi-process deployments (no shared state)
    """

    def __init__(self):
        self._entries: list[AuditEntry] = []
        self._lock = Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            last = self._entries[-1] if self._entries else None
            if last is not None and entry.sequence_index <= last.sequence_index:
                raise StaleHeadError(
                    f"Sequence index {entry.sequence_index} already taken "
                    f"(stored head is {last.sequence_index})"
                )

            expected = 0 if last is None else last.sequence_index + 1
            if entry.sequence_index != expected:
                raise AuditStoreError(
                    f"Sequence gap: expected {expected}, got {entry.sequence_index}"
                )

            if last is not None and entry.prev_hash != last.curr_hash:
                raise StaleHeadError(
                    f"Entry {entry.sequence_index} links to "
                    f"{entry.prev_hash[:16]}..., stored head is "
                    f"{last.curr_hash[:16]}..."
                )

            self._entries.append(entry)
            return entry

    def latest(self) -> Optional[AuditEntry]:
        with self._lock:
            if not self._entries:
                return None
            top = max(self._entries, key=lambda e: e.sequence_index)
            claimants = [e for e in self._entries if e.sequence_index == top.sequence_index]
        if len(claimants) > 1:
            raise BootstrapAmbiguityError(
                f"{len(claimants)} entries claim the maximal sequence index "
                f"{top.sequence_index}",
                top.sequence_index,
            )
        return top

    def stream_from(
        self,
        sequence_index: int,
        until: Optional[int] = None,
    ) -> Iterator[AuditEntry]:
        # Snapshot under the lock, yield outside it
        with self._lock:
            snapshot = sorted(
                (
                    e for e in self._entries
                    if e.sequence_index >= sequence_index
                    and (until is None or e.sequence_index <= until)
                ),
                key=lambda e: e.sequence_index,
            )
        yield from snapshot

    def get(self, sequence_index: int) -> Optional[AuditEntry]:
        with self._lock:
            for entry in self._entries:
                if entry.sequence_index == sequence_index:
                    return entry
        return None

    def first(self) -> Optional[AuditEntry]:
        with self._lock:
            if not self._entries:
                return None
            return min(self._entries, key=lambda e: e.sequence_index)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def purge_before(self, sequence_index: int) -> int:
        with self._lock:
            kept = [e for e in self._entries if e.sequence_index >= sequence_index]
            removed = len(self._entries) - len(kept)
            self._entries = kept
        return removed

    def clear(self) -> None:
        """Clear all entries (for testing only)."""
        with self._lock:
            self._entries.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

_COLUMNS = (
    "entry_id, sequence_index, actor_id, action, entity_type, entity_id, "
    "prev_hash, curr_hash, event_timestamp, hash_version"
)


class PostgresAuditStore(AuditStore):
    """
    PostgreSQL implementation of AuditStore.

    Provides:
    - One transaction per append (all-or-nothing)
    - sequence_index PRIMARY KEY: a second writer for the same index fails
    - FOR UPDATE on the stored head row so writers in different processes
      queue instead of racing
    - Lock/statement timeouts so a stalled database does not hang callers
    - Server-side cursors for streaming (constant memory)

    THREAD SAFETY:
    Every operation opens its own connection from connection_factory.
    The same store instance can be shared across threads.

    Usage:
        store = PostgresAuditStore(lambda: psycopg2.connect(dsn))
        store.create_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000
    STREAM_BATCH_SIZE = 500

    # psycopg2 error codes
    PGCODE_LOCK_NOT_AVAILABLE = errorcodes.LOCK_NOT_AVAILABLE  # 55P03
    PGCODE_QUERY_CANCELED = errorcodes.QUERY_CANCELED  # 57014
    PGCODE_UNIQUE_VIOLATION = errorcodes.UNIQUE_VIOLATION  # 23505

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL audit store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the head row lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    # ----------------------------------------------------------------
    # Connection handling
    # ----------------------------------------------------------------

    def _connect(self):
        try:
            return self._connection_factory()
        except psycopg2.Error as e:
            raise TransientStoreError(f"Could not connect to audit store: {e}") from e

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Determine the type of timeout from a PostgreSQL exception.

        Returns "lock", "statement" or None.

        lock_timeout raises 55P03 (lock_not_available);
        statement_timeout raises 57014 (query_canceled).
        """
        if isinstance(e, pg_errors.LockNotAvailable):
            return "lock"
        if isinstance(e, pg_errors.QueryCanceled):
            if "lock timeout" in str(e).lower():
                return "lock"
            return "statement"

        pgcode = getattr(e, "pgcode", None)
        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"
        if pgcode == self.PGCODE_QUERY_CANCELED:
            return "statement"
        return None

    def _translate(self, e: Exception, operation: str) -> Exception:
        """Map a psycopg2 exception onto the audit trail taxonomy."""
        if (
            isinstance(e, pg_errors.UniqueViolation)
            or getattr(e, "pgcode", None) == self.PGCODE_UNIQUE_VIOLATION
        ):
            return StaleHeadError(
                f"{operation}: another writer already used this sequence index"
            )

        kind = self._timeout_kind(e)
        if kind == "lock":
            return LockTimeoutError(f"{operation}: audit store busy, lock not acquired")
        if kind is not None:
            return TransientStoreError(f"{operation}: statement timed out")

        if isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            return TransientStoreError(f"{operation}: {e}")

        return AuditStoreError(f"{operation}: {e}")

    def _set_timeouts(self, cursor) -> None:
        # SET LOCAL keeps timeouts transaction-scoped
        cursor.execute(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
        cursor.execute(f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'")

    def _fetch(self, sql: str, params: tuple = (), many: bool = False):
        conn = self._connect()
        try:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                return cursor.fetchall() if many else cursor.fetchone()
            finally:
                cursor.close()
        except psycopg2.Error as e:
            raise self._translate(e, "read") from e
        finally:
            conn.close()

    # ----------------------------------------------------------------
    # Schema
    # ----------------------------------------------------------------

    @staticmethod
    def schema_sql() -> str:
        return resources.files("audittrail.db").joinpath("schema.sql").read_text(encoding="utf-8")

    def create_schema(self) -> None:
        """Create the audit_entries table and its append-only trigger."""
        conn = self._connect()
        try:
            cursor = conn.cursor()
            try:
                cursor.execute(self.schema_sql())
                conn.commit()
            finally:
                cursor.close()
        except psycopg2.Error as e:
            conn.rollback()
            raise self._translate(e, "create_schema") from e
        finally:
            conn.close()

    # ----------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------

    def append(self, entry: AuditEntry) -> AuditEntry:
        conn = self._connect()
        conn.autocommit = False
        committed = False
        try:
            cursor = conn.cursor()
            try:
                self._set_timeouts(cursor)

                # Lock the stored head row; concurrent writers queue here
                cursor.execute(f"""
                    SELECT sequence_index, curr_hash
                    FROM audit_entries
                    ORDER BY sequence_index DESC
                    LIMIT 1
                    FOR UPDATE
                """)
                row = cursor.fetchone()

                if row is None:
                    expected, stored_hash = 0, None
                else:
                    expected, stored_hash = row[0] + 1, row[1]

                if entry.sequence_index < expected:
                    raise StaleHeadError(
                        f"Sequence index {entry.sequence_index} already taken "
                        f"(stored head is {expected - 1})"
                    )
                if entry.sequence_index != expected:
                    raise AuditStoreError(
                        f"Sequence gap: expected {expected}, got {entry.sequence_index}"
                    )
                if stored_hash is not None and entry.prev_hash != stored_hash:
                    raise StaleHeadError(
                        f"Entry {entry.sequence_index} does not link to the stored head"
                    )

                cursor.execute(f"""
                    INSERT INTO audit_entries ({_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    str(entry.entry_id),
                    entry.sequence_index,
                    entry.actor_id,
                    entry.action,
                    entry.entity_type,
                    entry.entity_id,
                    entry.prev_hash,
                    entry.curr_hash,
                    entry.timestamp,
                    entry.hash_version,
                ))
                conn.commit()
                committed = True
            finally:
                cursor.close()
        except psycopg2.Error as e:
            raise self._translate(e, "append") from e
        finally:
            if not committed:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    logger.warning("Rollback failed on broken connection")
            conn.close()

        return entry

    def purge_before(self, sequence_index: int) -> int:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            try:
                self._set_timeouts(cursor)
                cursor.execute(
                    "DELETE FROM audit_entries WHERE sequence_index < %s",
                    (sequence_index,),
                )
                removed = cursor.rowcount
                conn.commit()
            finally:
                cursor.close()
        except psycopg2.Error as e:
            conn.rollback()
            raise self._translate(e, "purge_before") from e
        finally:
            conn.close()
        return removed

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    def latest(self) -> Optional[AuditEntry]:
        # Two rows, so a duplicated maximum is visible instead of hidden
        rows = self._fetch(f"""
            SELECT {_COLUMNS}
            FROM audit_entries
            ORDER BY sequence_index DESC
            LIMIT 2
        """, many=True)
        if not rows:
            return None
        if len(rows) > 1 and rows[0][1] == rows[1][1]:
            raise BootstrapAmbiguityError(
                f"Two entries claim the maximal sequence index {rows[0][1]}",
                rows[0][1],
            )
        return self._row_to_entry(rows[0])

    def first(self) -> Optional[AuditEntry]:
        row = self._fetch(f"""
            SELECT {_COLUMNS}
            FROM audit_entries
            ORDER BY sequence_index ASC
            LIMIT 1
        """)
        return self._row_to_entry(row) if row else None

    def get(self, sequence_index: int) -> Optional[AuditEntry]:
        row = self._fetch(f"""
            SELECT {_COLUMNS}
            FROM audit_entries
            WHERE sequence_index = %s
        """, (sequence_index,))
        return self._row_to_entry(row) if row else None

    def count(self) -> int:
        return self._fetch("SELECT COUNT(*) FROM audit_entries")[0]

    def stream_from(
        self,
        sequence_index: int,
        until: Optional[int] = None,
    ) -> Iterator[AuditEntry]:
        conn = self._connect()
        try:
            # Named cursor = server-side, fetched in batches
            cursor = conn.cursor(name="audit_stream")
            cursor.itersize = self.STREAM_BATCH_SIZE
            try:
                if until is None:
                    cursor.execute(f"""
                        SELECT {_COLUMNS}
                        FROM audit_entries
                        WHERE sequence_index >= %s
                        ORDER BY sequence_index
                    """, (sequence_index,))
                else:
                    cursor.execute(f"""
                        SELECT {_COLUMNS}
                        FROM audit_entries
                        WHERE sequence_index >= %s AND sequence_index <= %s
                        ORDER BY sequence_index
                    """, (sequence_index, until))
                for row in cursor:
                    yield self._row_to_entry(row)
            finally:
                cursor.close()
        except psycopg2.Error as e:
            raise self._translate(e, "stream_from") from e
        finally:
            conn.close()

    def _row_to_entry(self, row: tuple) -> AuditEntry:
        """Convert a database row to an AuditEntry."""
        return AuditEntry(
            entry_id=UUID(row[0]) if isinstance(row[0], str) else row[0],
            sequence_index=row[1],
            actor_id=row[2],
            action=row[3],
            entity_type=row[4],
            entity_id=row[5],
            prev_hash=row[6],
            curr_hash=row[7],
            timestamp=row[8],
            hash_version=row[9],
        )
