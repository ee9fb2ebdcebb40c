"""
Chain Verifier

Walks stored entries in order and recomputes every link.
Read-only: never takes the sequencer lock, never modifies the store.

Per-entry checks, in this order:
1. Contiguity: sequence_index is exactly one past the previous entry
2. Link: prev_hash equals the previous entry's curr_hash
   (or the seed / GENESIS_HASH for the first entry)
3. Time: timestamp is not earlier than the previous entry's
4. Hash: curr_hash reproduces from the entry's own fields

A field edited in place passes its own link check and fails check 4,
so it is reported at the edited entry.
"""

from contextlib import closing
from itertools import chain
from typing import Optional, TYPE_CHECKING

from ..observability import get_logger, get_metrics, report_integrity_failure
from ..schemas import AuditEntry, VerificationResult
from .hasher import GENESIS_HASH, CanonicalSerializationError, Hasher

if TYPE_CHECKING:
    from ..db.store import AuditStore

logger = get_logger(__name__)


class ChainVerifier:
    """Independent integrity check over a range of the chain."""

    def __init__(self, store: "AuditStore"):
        self._store = store

    def _fail(
        self,
        from_index: int,
        broken_at: int,
        failure: str,
        reason: str,
        checked: int,
        last: Optional[AuditEntry],
        checkpoint_index: Optional[int],
    ) -> VerificationResult:
        report_integrity_failure(
            failure,
            f"Chain broken at sequence {broken_at}: {reason}",
            broken_at,
            from_index=from_index,
        )
        return VerificationResult(
            valid=False,
            broken_at=broken_at,
            reason=reason,
            failure=failure,
            from_index=from_index,
            entries_checked=checked,
            last_sequence_index=last.sequence_index if last else None,
            last_hash=last.curr_hash if last else None,
            checkpoint_index=checkpoint_index,
        )

    @staticmethod
    def _checkpoint_anchors(entry: AuditEntry) -> bool:
        """A checkpoint names the entry it follows: (index - 1, prev_hash)."""
        summary = entry.checkpoint_summary()
        return summary == (entry.sequence_index - 1, entry.prev_hash)

    def verify(
        self,
        from_index: int = 0,
        expected_seed_hash: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify entries from from_index up to the head at call time.

        Args:
            from_index: First sequence index to check
            expected_seed_hash: Previously verified curr_hash of entry
                from_index - 1. Required when from_index > 0, unless the
                first entry in range is a checkpoint.

        Returns:
            VerificationResult; on failure, the first failure found

        Raises:
            ValueError: bad from_index, malformed or missing seed
        """
        if from_index < 0:
            raise ValueError("from_index must be >= 0")

        seed = None
        if expected_seed_hash is not None:
            try:
                seed = Hasher.normalize_hash(expected_seed_hash, "seed hash")
            except CanonicalSerializationError as e:
                raise ValueError(str(e)) from e

        get_metrics().record_verification()

        # Upper bound fixed now; entries appended later are out of scope
        latest = self._store.latest()

        if latest is None or latest.sequence_index < from_index:
            return self._verify_empty_range(from_index, seed, latest)

        with closing(self._store.stream_from(from_index, until=latest.sequence_index)) as stream:
            first = next(stream, None)

            if first is None:
                return self._fail(
                    from_index, from_index, "continuity",
                    "missing entries", 0, None, None,
                )

            checkpoint_index = None
            if first.sequence_index > from_index:
                # Purged prefix: only a checkpoint may stand in for it
                if not first.is_checkpoint:
                    return self._fail(
                        from_index, from_index, "continuity",
                        f"missing entries {from_index}..{first.sequence_index - 1}",
                        0, None, None,
                    )
                if not self._checkpoint_anchors(first):
                    return self._fail(
                        from_index, first.sequence_index, "continuity",
                        "checkpoint summary does not match its link",
                        0, None, first.sequence_index,
                    )
                checkpoint_index = first.sequence_index
                expected_prev = first.prev_hash
            elif from_index == 0:
                expected_prev = GENESIS_HASH
            elif seed is not None:
                expected_prev = seed
            elif first.is_checkpoint:
                if not self._checkpoint_anchors(first):
                    return self._fail(
                        from_index, first.sequence_index, "continuity",
                        "checkpoint summary does not match its link",
                        0, None, first.sequence_index,
                    )
                checkpoint_index = first.sequence_index
                expected_prev = first.prev_hash
            else:
                raise ValueError(
                    f"Verifying from index {from_index} requires expected_seed_hash "
                    "(the verified hash of the preceding entry)"
                )

            expected_index = first.sequence_index
            prev_hash = expected_prev
            prev_timestamp = None
            last = None
            checked = 0

            for entry in chain([first], stream):
                index = entry.sequence_index

                if index != expected_index:
                    return self._fail(
                        from_index, expected_index, "continuity",
                        f"expected sequence {expected_index}, found {index}",
                        checked, last, checkpoint_index,
                    )

                if entry.prev_hash != prev_hash:
                    return self._fail(
                        from_index, index, "continuity",
                        "prev_hash does not match the preceding entry",
                        checked, last, checkpoint_index,
                    )

                if prev_timestamp is not None and entry.timestamp < prev_timestamp:
                    return self._fail(
                        from_index, index, "continuity",
                        "timestamp earlier than the preceding entry",
                        checked, last, checkpoint_index,
                    )

                if entry.hash_version not in Hasher.SUPPORTED_VERSIONS:
                    return self._fail(
                        from_index, index, "hash_mismatch",
                        f"unsupported hash version {entry.hash_version}",
                        checked, last, checkpoint_index,
                    )

                if not entry.hash_matches():
                    return self._fail(
                        from_index, index, "hash_mismatch",
                        "curr_hash does not reproduce from stored fields",
                        checked, last, checkpoint_index,
                    )

                prev_hash = entry.curr_hash
                prev_timestamp = entry.timestamp
                last = entry
                checked += 1
                expected_index += 1

        if last is None or last.sequence_index < latest.sequence_index:
            return self._fail(
                from_index, expected_index, "continuity",
                "missing entries", checked, last, checkpoint_index,
            )

        logger.info(
            "Chain verified",
            from_index=from_index,
            entries_checked=checked,
            last_sequence_index=last.sequence_index,
        )
        return VerificationResult(
            valid=True,
            from_index=from_index,
            entries_checked=checked,
            last_sequence_index=last.sequence_index,
            last_hash=last.curr_hash,
            checkpoint_index=checkpoint_index,
        )

    def _verify_empty_range(
        self,
        from_index: int,
        seed: Optional[str],
        latest: Optional[AuditEntry],
    ) -> VerificationResult:
        """Nothing stored at or after from_index."""
        if from_index == 0:
            return VerificationResult(valid=True, from_index=0)

        if latest is None or from_index > latest.sequence_index + 1:
            raise ValueError(
                f"from_index {from_index} is beyond the chain head"
            )

        # from_index is exactly the next index: the seed must be the head
        if seed is None:
            raise ValueError(
                f"Verifying from index {from_index} requires expected_seed_hash"
            )
        if seed != latest.curr_hash:
            return self._fail(
                from_index, latest.sequence_index, "continuity",
                "seed hash does not match the stored entry",
                0, None, None,
            )
        return VerificationResult(
            valid=True,
            from_index=from_index,
            last_sequence_index=latest.sequence_index,
            last_hash=latest.curr_hash,
        )
