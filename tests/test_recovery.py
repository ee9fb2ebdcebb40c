"""
Tests for bootstrapping the chain head from stored state.

A restarted process must continue the stored chain, and must refuse to
start on a head it cannot trust.
"""

import pytest

from audittrail.core import AuditTrail, ChainHead, bootstrap_head
from audittrail.core.errors import (
    BootstrapAmbiguityError,
    ChainContinuityError,
    HashMismatchError,
    IntegrityError,
)
from audittrail.core.hasher import GENESIS_HASH, Hasher
from audittrail.db.store import InMemoryAuditStore
from audittrail.observability import get_metrics


class NoLatestStore(InMemoryAuditStore):
    """Reports entries but cannot say which one is the latest."""

    def latest(self):
        return None


def replace_entry(store, index, **changes):
    """Edit a stored entry in place, the way a direct database write would."""
    for position, entry in enumerate(store._entries):
        if entry.sequence_index == index:
            store._entries[position] = entry.model_copy(update=changes)
            return store._entries[position]
    raise KeyError(index)


class TestBootstrapHead:

    def test_empty_store_starts_at_genesis(self, store):
        head = bootstrap_head(store)
        assert head == ChainHead()
        assert head.last_hash == GENESIS_HASH

    def test_head_taken_from_latest_entry(self, store, trail, record_many):
        entries = record_many(trail, 3)

        head = bootstrap_head(store)

        assert head.last_sequence_index == 2
        assert head.last_hash == entries[-1].curr_hash
        assert head.last_timestamp == entries[-1].timestamp

    def test_tampered_latest_halts(self, store, trail, record_many):
        record_many(trail, 3)
        replace_entry(store, 2, action="complaint.withdraw")

        with pytest.raises(HashMismatchError) as exc:
            bootstrap_head(store)
        assert exc.value.sequence_index == 2

    def test_rehashed_latest_with_foreign_link_halts(self, store, trail, record_many):
        """A latest entry that hashes correctly but does not link to its predecessor."""
        record_many(trail, 3)
        latest = store.get(2)
        forged_prev = "f" * 64
        replace_entry(
            store,
            2,
            prev_hash=forged_prev,
            curr_hash=Hasher.compute_link(forged_prev, latest),
        )

        with pytest.raises(ChainContinuityError) as exc:
            bootstrap_head(store)
        assert exc.value.sequence_index == 2

    def test_genesis_must_link_to_genesis_hash(self, store, trail, record_many):
        record_many(trail, 1)
        entry = store.get(0)
        forged_prev = "a" * 64
        replace_entry(
            store,
            0,
            prev_hash=forged_prev,
            curr_hash=Hasher.compute_link(forged_prev, entry),
        )

        with pytest.raises(ChainContinuityError):
            bootstrap_head(store)

    def test_missing_predecessor_halts(self, store, trail, record_many):
        record_many(trail, 5)
        store._entries = [e for e in store._entries if e.sequence_index != 3]

        with pytest.raises(ChainContinuityError) as exc:
            bootstrap_head(store)
        assert exc.value.sequence_index == 4

    def test_checkpoint_may_follow_purged_prefix(self, store, trail, record_many):
        record_many(trail, 3)
        checkpoint = trail.checkpoint()
        # Prefix removed but the purge entry never written
        store.purge_before(checkpoint.sequence_index)

        head = bootstrap_head(store)

        assert head.last_sequence_index == checkpoint.sequence_index
        assert head.last_hash == checkpoint.curr_hash

    def test_duplicate_maximum_is_ambiguous(self, store, trail, record_many):
        from uuid import uuid4

        record_many(trail, 2)
        store._entries.append(store.get(1).model_copy(update={"entry_id": uuid4()}))

        with pytest.raises(BootstrapAmbiguityError):
            bootstrap_head(store)

    def test_entries_without_latest_is_ambiguous(self, clock):
        store = NoLatestStore()
        AuditTrail(store, clock=clock).record_event("u1", "complaint.submit", "complaint", "c-1")

        with pytest.raises(BootstrapAmbiguityError):
            bootstrap_head(store)

    def test_verify_on_start_catches_tampered_middle(self, store, trail, record_many):
        record_many(trail, 5)
        replace_entry(store, 1, entity_id="c-999")

        # The latest entry alone looks fine
        assert bootstrap_head(store).last_sequence_index == 4

        with pytest.raises(HashMismatchError) as exc:
            bootstrap_head(store, verify_on_start=True)
        assert exc.value.sequence_index == 1

    def test_halt_is_counted_as_integrity_failure(self, store, trail, record_many):
        record_many(trail, 2)
        replace_entry(store, 1, actor_id="intruder")
        before = get_metrics().integrity_failures

        with pytest.raises(IntegrityError):
            bootstrap_head(store)

        assert get_metrics().integrity_failures == before + 1


class TestRestartContinuity:

    def test_new_trail_continues_stored_chain(self, store, clock, record_many):
        first_run = AuditTrail(store, clock=clock)
        before = record_many(first_run, 3)

        second_run = AuditTrail(store, clock=clock)
        after = record_many(second_run, 2, start=3)

        assert [e.sequence_index for e in after] == [3, 4]
        assert after[0].prev_hash == before[-1].curr_hash
        assert second_run.verify_chain().valid

    def test_trail_refuses_to_start_on_tampered_store(self, store, clock, record_many):
        record_many(AuditTrail(store, clock=clock), 3)
        replace_entry(store, 2, entity_type="user")

        with pytest.raises(HashMismatchError):
            AuditTrail(store, clock=clock)

        # Nothing was repaired
        assert store.count() == 3
