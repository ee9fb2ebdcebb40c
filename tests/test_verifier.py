"""
Tests for chain verification.

Each tamper scenario edits the store directly, the way someone with
database access would, then checks where the break is reported.
"""

import json

import pytest

from audittrail.core import ChainVerifier
from audittrail.core.hasher import Hasher
from audittrail.observability import setup_integrity_channel


def replace_entry(store, index, **changes):
    for position, entry in enumerate(store._entries):
        if entry.sequence_index == index:
            store._entries[position] = entry.model_copy(update=changes)
            return store._entries[position]
    raise KeyError(index)


def delete_entry(store, index):
    store._entries = [e for e in store._entries if e.sequence_index != index]


@pytest.fixture
def chain(trail, record_many):
    """Five recorded entries."""
    return record_many(trail, 5)


@pytest.fixture
def verifier(store):
    return ChainVerifier(store)


class TestIntactChain:

    def test_empty_chain_is_valid(self, verifier):
        result = verifier.verify()
        assert result.valid
        assert result.entries_checked == 0
        assert result.last_sequence_index is None

    def test_full_chain_is_valid(self, verifier, chain):
        result = verifier.verify()

        assert result.valid
        assert result.broken_at is None
        assert result.entries_checked == 5
        assert result.last_sequence_index == 4
        assert result.last_hash == chain[-1].curr_hash

    def test_result_seeds_next_verification(self, verifier, trail, chain, record_many):
        first = verifier.verify()
        record_many(trail, 3, start=5)

        incremental = verifier.verify(
            from_index=first.last_sequence_index + 1,
            expected_seed_hash=first.last_hash,
        )

        assert incremental.valid
        assert incremental.entries_checked == 3
        assert incremental.last_sequence_index == 7

    def test_seed_equal_to_head_verifies_empty_suffix(self, verifier, chain):
        result = verifier.verify(from_index=5, expected_seed_hash=chain[-1].curr_hash)
        assert result.valid
        assert result.entries_checked == 0
        assert result.last_sequence_index == 4


class TestTampering:

    def test_edited_field_reported_at_edited_entry(self, verifier, store, chain):
        replace_entry(store, 2, action="complaint.withdraw")

        result = verifier.verify()

        assert not result.valid
        assert result.broken_at == 2
        assert result.failure == "hash_mismatch"
        assert result.entries_checked == 2
        assert result.last_sequence_index == 1

    def test_edited_timestamp_detected(self, verifier, store, chain):
        replace_entry(store, 3, timestamp=chain[3].timestamp.replace(microsecond=1))

        result = verifier.verify()

        assert result.broken_at == 3
        assert result.failure == "hash_mismatch"

    def test_consistent_rehash_breaks_next_link(self, verifier, store, chain):
        """Recomputing curr_hash after an edit moves the break to the successor."""
        edited = chain[2].model_copy(update={"entity_id": "c-forged"})
        replace_entry(
            store,
            2,
            entity_id="c-forged",
            curr_hash=Hasher.compute_link(edited.prev_hash, edited),
        )

        result = verifier.verify()

        assert result.broken_at == 3
        assert result.failure == "continuity"

    def test_deleted_entry_reported_as_gap(self, verifier, store, chain):
        delete_entry(store, 2)

        result = verifier.verify()

        assert not result.valid
        assert result.broken_at == 2
        assert result.failure == "continuity"
        assert "expected sequence 2" in result.reason

    def test_deleted_prefix_without_checkpoint(self, verifier, store, chain):
        delete_entry(store, 0)
        delete_entry(store, 1)

        result = verifier.verify()

        assert not result.valid
        assert result.broken_at == 0
        assert result.failure == "continuity"

    def test_timestamp_going_backwards(self, verifier, store, chain):
        earlier = chain[1].timestamp
        edited = chain[3].model_copy(update={"timestamp": earlier})
        replace_entry(
            store,
            3,
            timestamp=earlier,
            curr_hash=Hasher.compute_link(edited.prev_hash, edited),
        )

        result = verifier.verify()

        assert result.broken_at == 3
        assert "timestamp" in result.reason

    def test_unknown_hash_version(self, verifier, store, chain):
        replace_entry(store, 1, hash_version=99)

        result = verifier.verify()

        assert result.broken_at == 1
        assert result.failure == "hash_mismatch"

    def test_to_error_matches_failure(self, verifier, store, chain):
        from audittrail.core.errors import ChainContinuityError, HashMismatchError

        replace_entry(store, 2, actor_id="intruder")
        error = verifier.verify().to_error()
        assert isinstance(error, HashMismatchError)
        assert error.sequence_index == 2

        delete_entry(store, 2)
        error = verifier.verify().to_error()
        assert isinstance(error, ChainContinuityError)


class TestSeeds:

    def test_midpoint_requires_seed(self, verifier, chain):
        with pytest.raises(ValueError, match="expected_seed_hash"):
            verifier.verify(from_index=2)

    def test_matching_seed(self, verifier, chain):
        result = verifier.verify(from_index=2, expected_seed_hash=chain[1].curr_hash)
        assert result.valid
        assert result.entries_checked == 3

    def test_uppercase_seed_accepted(self, verifier, chain):
        result = verifier.verify(from_index=2, expected_seed_hash=chain[1].curr_hash.upper())
        assert result.valid

    def test_wrong_seed(self, verifier, chain):
        result = verifier.verify(from_index=2, expected_seed_hash="a" * 64)
        assert not result.valid
        assert result.broken_at == 2
        assert result.failure == "continuity"

    def test_malformed_seed(self, verifier, chain):
        with pytest.raises(ValueError):
            verifier.verify(from_index=2, expected_seed_hash="not-a-hash")

    def test_negative_index(self, verifier):
        with pytest.raises(ValueError):
            verifier.verify(from_index=-1)

    def test_index_beyond_head(self, verifier, chain):
        with pytest.raises(ValueError, match="beyond"):
            verifier.verify(from_index=9, expected_seed_hash=chain[-1].curr_hash)


class TestCheckpointAnchors:

    def test_verification_can_start_at_checkpoint(self, verifier, trail, chain):
        checkpoint = trail.checkpoint()

        result = verifier.verify(from_index=checkpoint.sequence_index)

        assert result.valid
        assert result.checkpoint_index == checkpoint.sequence_index

    def test_purged_prefix_behind_checkpoint(self, verifier, trail, chain):
        checkpoint = trail.checkpoint()
        trail.purge_before(checkpoint.sequence_index)

        result = verifier.verify()

        assert result.valid
        assert result.checkpoint_index == checkpoint.sequence_index

    def test_forged_checkpoint_summary(self, verifier, store, trail, chain):
        checkpoint = trail.checkpoint()
        forged = checkpoint.model_copy(update={"entity_id": f"2:{chain[2].curr_hash}"})
        replace_entry(
            store,
            checkpoint.sequence_index,
            entity_id=forged.entity_id,
            curr_hash=Hasher.compute_link(forged.prev_hash, forged),
        )
        store.purge_before(checkpoint.sequence_index)

        result = verifier.verify()

        assert not result.valid
        assert result.broken_at == checkpoint.sequence_index


class TestIntegrityChannel:

    def test_failure_written_to_integrity_log(self, tmp_path, verifier, store, chain):
        log_path = tmp_path / "integrity.log"
        setup_integrity_channel(str(log_path))
        try:
            replace_entry(store, 2, entity_id="c-forged")
            verifier.verify()
        finally:
            setup_integrity_channel()

        records = [json.loads(line) for line in log_path.read_text().splitlines()]
        assert len(records) == 1
        assert records[0]["level"] == "ERROR"
        assert records[0]["integrity_failure"] == "hash_mismatch"
        assert records[0]["sequence_index"] == 2

    def test_success_writes_nothing(self, tmp_path, verifier, chain):
        log_path = tmp_path / "integrity.log"
        setup_integrity_channel(str(log_path))
        try:
            assert verifier.verify().valid
        finally:
            setup_integrity_channel()

        assert log_path.read_text() == ""
