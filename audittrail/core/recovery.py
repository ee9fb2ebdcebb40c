"""
Recovery - Bootstrap the Chain Head from Storage

A process that restarts must continue the existing chain, not start a
new one. The head is rebuilt from the store's latest entry, after checking
that entry is believable:

1. Exactly one entry claims the maximal sequence index
2. Its curr_hash reproduces from its own fields
3. It links to its predecessor, which must be stored unless the latest
   entry is a checkpoint summarizing a purged prefix
4. Entry 0 links to GENESIS_HASH

Failures halt startup. Nothing is repaired automatically.
"""

from typing import TYPE_CHECKING

from ..observability import get_logger, report_integrity_failure
from .errors import (
    BootstrapAmbiguityError,
    ChainContinuityError,
    HashMismatchError,
    IntegrityError,
)
from .hasher import GENESIS_HASH
from .sequencer import ChainHead

if TYPE_CHECKING:
    from ..db.store import AuditStore

logger = get_logger(__name__)


def _halt(error: IntegrityError) -> IntegrityError:
    report_integrity_failure(
        error.kind,
        f"Recovery halted: {error}",
        error.sequence_index,
        phase="bootstrap",
    )
    return error


def bootstrap_head(store: "AuditStore", verify_on_start: bool = False) -> ChainHead:
    """
    Derive the chain head from persisted state.

    Args:
        store: The audit store to recover from
        verify_on_start: Also run a full verification before accepting the head

    Returns:
        The recovered head (an empty head for an empty store)

    Raises:
        BootstrapAmbiguityError: the store cannot name one authoritative head
        HashMismatchError: the latest entry does not reproduce its hash
        ChainContinuityError: the latest entry does not link to its predecessor
    """
    try:
        latest = store.latest()
    except BootstrapAmbiguityError as e:
        raise _halt(e)

    if latest is None:
        stored = store.count()
        if stored:
            raise _halt(BootstrapAmbiguityError(
                f"Store reports {stored} entries but no latest entry"
            ))
        logger.info("Audit store is empty, starting from genesis")
        return ChainHead()

    index = latest.sequence_index

    if latest.is_genesis and latest.prev_hash != GENESIS_HASH:
        raise _halt(ChainContinuityError(
            "Entry 0 does not link to the genesis hash",
            index,
        ))

    if not latest.hash_matches():
        raise _halt(HashMismatchError(
            f"Latest entry {index} does not reproduce its stored hash",
            index,
        ))

    if index > 0:
        predecessor = store.get(index - 1)
        if predecessor is None:
            # Only a checkpoint may stand in for a purged prefix
            if latest.checkpoint_summary() != (index - 1, latest.prev_hash.lower()):
                raise _halt(ChainContinuityError(
                    f"Entry {index - 1} is missing before latest entry {index}",
                    index,
                ))
        elif predecessor.curr_hash != latest.prev_hash:
            raise _halt(ChainContinuityError(
                f"Latest entry {index} does not link to entry {index - 1}",
                index,
            ))

    if verify_on_start:
        from .verifier import ChainVerifier

        result = ChainVerifier(store).verify()
        if not result.valid:
            # Already reported by the verifier
            raise result.to_error()

    head = ChainHead.from_entry(latest)
    logger.info(
        "Chain head recovered",
        sequence_index=head.last_sequence_index,
        last_hash=head.last_hash[:16],
        verified=verify_on_start,
    )
    return head
