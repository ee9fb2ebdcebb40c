"""
Tests for the AuditStore implementations.

PostgresAuditStore is exercised against a scripted DB-API fake, so no
database is needed.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import psycopg2
import pytest
from psycopg2 import errors as pg_errors

from audittrail.core.errors import (
    AuditStoreError,
    BootstrapAmbiguityError,
    LockTimeoutError,
    StaleHeadError,
    TransientStoreError,
)
from audittrail.core.hasher import GENESIS_HASH, Hasher
from audittrail.db.store import InMemoryAuditStore, PostgresAuditStore
from audittrail.schemas import AuditEntry


BASE_TIME = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def make_chain(count):
    """Build `count` correctly linked entries without a sequencer."""
    entries = []
    prev_hash = GENESIS_HASH
    for i in range(count):
        fields = {
            "actor_id": f"u{i}",
            "action": "complaint.submit",
            "entity_type": "complaint",
            "entity_id": f"c-{i}",
            "timestamp": BASE_TIME + timedelta(seconds=i),
        }
        entry = AuditEntry(
            entry_id=uuid4(),
            sequence_index=i,
            prev_hash=prev_hash,
            curr_hash=Hasher.compute_link(prev_hash, fields),
            **fields,
        )
        entries.append(entry)
        prev_hash = entry.curr_hash
    return entries


def as_row(entry):
    return (
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
    )


class TestInMemoryAuditStore:

    @pytest.fixture
    def chain(self):
        return make_chain(5)

    @pytest.fixture
    def filled(self, chain):
        store = InMemoryAuditStore()
        for entry in chain:
            store.append(entry)
        return store

    def test_empty_store(self):
        store = InMemoryAuditStore()
        assert store.latest() is None
        assert store.first() is None
        assert store.count() == 0
        assert list(store.stream_from(0)) == []

    def test_append_and_read(self, filled, chain):
        assert filled.count() == 5
        assert filled.latest() == chain[-1]
        assert filled.first() == chain[0]
        assert filled.get(2) == chain[2]
        assert filled.get(99) is None

    def test_stream_is_ordered_and_bounded(self, filled):
        assert [e.sequence_index for e in filled.stream_from(1)] == [1, 2, 3, 4]
        assert [e.sequence_index for e in filled.stream_from(1, until=2)] == [1, 2]

    def test_stream_is_restartable(self, filled):
        first_pass = list(filled.stream_from(0))
        second_pass = list(filled.stream_from(0))
        assert first_pass == second_pass

    def test_duplicate_index_is_stale(self, filled, chain):
        with pytest.raises(StaleHeadError):
            filled.append(chain[3])
        assert filled.count() == 5

    def test_wrong_link_is_stale(self, filled, chain):
        rogue = chain[4].model_copy(update={"sequence_index": 5, "prev_hash": "f" * 64})
        with pytest.raises(StaleHeadError):
            filled.append(rogue)

    def test_gap_rejected(self, chain):
        store = InMemoryAuditStore()
        store.append(chain[0])
        with pytest.raises(AuditStoreError, match="gap"):
            store.append(chain[2])

    def test_first_entry_must_be_zero(self, chain):
        with pytest.raises(AuditStoreError):
            InMemoryAuditStore().append(chain[1])

    def test_purge_before(self, filled):
        assert filled.purge_before(3) == 3
        assert filled.first().sequence_index == 3
        assert filled.count() == 2

    def test_latest_detects_duplicate_maximum(self, filled, chain):
        filled._entries.append(chain[4].model_copy(update={"entry_id": uuid4()}))
        with pytest.raises(BootstrapAmbiguityError):
            filled.latest()


# ============================================================
# PostgreSQL adapter against a scripted connection
# ============================================================

class FakeCursor:
    def __init__(self, conn, name=None):
        self.conn = conn
        self.name = name
        self.itersize = None
        self.rowcount = 0
        self._rows = []

    def execute(self, sql, params=None):
        statement = " ".join(sql.split())
        self.conn.executed.append((statement, params, self.name))
        for marker, result in self.conn.script:
            if marker in statement:
                if isinstance(result, Exception):
                    raise result
                self._rows = list(result)
                self.rowcount = len(self._rows)
                return
        self._rows = []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def __iter__(self):
        return iter(self._rows)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, script):
        self.script = script
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.autocommit = True

    def cursor(self, name=None):
        return FakeCursor(self, name)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True

    def statements(self):
        return [sql for sql, _, _ in self.executed]


def store_for(*script):
    conn = FakeConnection(list(script))
    return PostgresAuditStore(lambda: conn), conn


class TestPostgresAuditStore:

    @pytest.fixture
    def chain(self):
        return make_chain(3)

    def test_append_to_empty_table(self, chain):
        store, conn = store_for(("FOR UPDATE", []))

        assert store.append(chain[0]) == chain[0]

        statements = conn.statements()
        assert statements[0].startswith("SET LOCAL lock_timeout")
        assert statements[1].startswith("SET LOCAL statement_timeout")
        assert "FOR UPDATE" in statements[2]
        assert statements[3].startswith("INSERT INTO audit_entries")
        assert conn.commits == 1
        assert conn.rollbacks == 0
        assert conn.closed

    def test_append_passes_entry_values(self, chain):
        store, conn = store_for(("FOR UPDATE", [(0, chain[0].curr_hash)]))

        store.append(chain[1])

        _, params, _ = conn.executed[-1]
        assert params[0] == str(chain[1].entry_id)
        assert params[1] == 1
        assert params[6] == chain[0].curr_hash
        assert params[7] == chain[1].curr_hash

    def test_append_behind_stored_head_is_stale(self, chain):
        store, conn = store_for(("FOR UPDATE", [(2, chain[2].curr_hash)]))

        with pytest.raises(StaleHeadError):
            store.append(chain[1])

        assert not any(s.startswith("INSERT") for s in conn.statements())
        assert conn.commits == 0
        assert conn.rollbacks == 1
        assert conn.closed

    def test_append_with_foreign_link_is_stale(self, chain):
        store, _ = store_for(("FOR UPDATE", [(0, "f" * 64)]))
        with pytest.raises(StaleHeadError):
            store.append(chain[1])

    def test_append_gap_rejected(self, chain):
        store, _ = store_for(("FOR UPDATE", []))
        with pytest.raises(AuditStoreError, match="gap"):
            store.append(chain[2])

    def test_unique_violation_is_stale(self, chain):
        store, conn = store_for(
            ("FOR UPDATE", []),
            ("INSERT INTO", pg_errors.UniqueViolation("duplicate key")),
        )
        with pytest.raises(StaleHeadError):
            store.append(chain[0])
        assert conn.rollbacks == 1

    def test_lock_timeout(self, chain):
        store, _ = store_for(
            ("FOR UPDATE", pg_errors.LockNotAvailable("canceling statement due to lock timeout")),
        )
        with pytest.raises(LockTimeoutError):
            store.append(chain[0])

    def test_statement_timeout_is_transient(self, chain):
        store, _ = store_for(
            ("INSERT INTO", pg_errors.QueryCanceled("canceling statement due to statement timeout")),
        )
        with pytest.raises(TransientStoreError) as exc:
            store.append(chain[0])
        assert not isinstance(exc.value, LockTimeoutError)

    def test_connection_failure_is_transient(self):
        def refuse():
            raise psycopg2.OperationalError("connection refused")

        store = PostgresAuditStore(refuse)
        with pytest.raises(TransientStoreError):
            store.count()

    def test_latest_maps_row(self, chain):
        store, _ = store_for(("LIMIT 2", [as_row(chain[2]), as_row(chain[1])]))

        latest = store.latest()

        assert latest.to_export() == chain[2].to_export()
        assert latest.hash_matches()

    def test_latest_empty(self):
        store, _ = store_for(("LIMIT 2", []))
        assert store.latest() is None

    def test_latest_duplicate_maximum(self, chain):
        twin = chain[2].model_copy(update={"entry_id": uuid4()})
        store, _ = store_for(("LIMIT 2", [as_row(chain[2]), as_row(twin)]))
        with pytest.raises(BootstrapAmbiguityError):
            store.latest()

    def test_count(self):
        store, _ = store_for(("COUNT(*)", [(7,)]))
        assert store.count() == 7

    def test_stream_uses_server_side_cursor(self, chain):
        store, conn = store_for(("ORDER BY sequence_index", [as_row(e) for e in chain]))

        streamed = list(store.stream_from(0))

        assert [e.to_export() for e in streamed] == [e.to_export() for e in chain]
        _, params, cursor_name = conn.executed[-1]
        assert cursor_name == "audit_stream"
        assert params == (0,)
        assert conn.closed

    def test_stream_with_upper_bound(self, chain):
        store, conn = store_for(("ORDER BY sequence_index", [as_row(chain[1])]))

        list(store.stream_from(1, until=1))

        _, params, _ = conn.executed[-1]
        assert params == (1, 1)

    def test_purge_before(self):
        store, conn = store_for(("DELETE FROM", [(), (), ()]))

        assert store.purge_before(3) == 3
        assert conn.commits == 1

    def test_create_schema_runs_shipped_sql(self):
        store, conn = store_for()

        store.create_schema()

        assert "CREATE TABLE IF NOT EXISTS audit_entries" in conn.statements()[0]
        assert conn.commits == 1
