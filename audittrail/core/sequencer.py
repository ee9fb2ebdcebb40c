"""
Chain Sequencer - Owner of the Chain Head

The head is the only mutable state in the audit trail:
(last sequence index, last hash, last timestamp).

Rules (enforced in code):
- The head lives in exactly one place: a ChainSequencer instance
- Read head -> compute link -> append -> advance is one critical section
- The head advances ONLY after the store confirms the append
- Any failure, timeouts included, leaves the head exactly as it was
- Timestamps never go backwards along the chain

A sequencer is built from recovered storage state (see recovery.py),
never from a hardcoded genesis on a non-empty store.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, TYPE_CHECKING
from uuid import uuid4

from ..observability import get_logger, get_metrics
from ..schemas import AuditEntry, is_reserved_event
from .errors import LockTimeoutError
from .hasher import GENESIS_HASH, Hasher

if TYPE_CHECKING:
    from ..db.store import AuditStore

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChainHead:
    """
    Snapshot of the chain head.

    Replaced wholesale on every advance; never mutated.
    """
    last_sequence_index: int = -1
    last_hash: str = GENESIS_HASH
    last_timestamp: Optional[datetime] = None

    @property
    def next_sequence_index(self) -> int:
        return self.last_sequence_index + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence_index < 0

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "ChainHead":
        return cls(
            last_sequence_index=entry.sequence_index,
            last_hash=entry.curr_hash,
            last_timestamp=entry.timestamp,
        )


def _require_text(name: str, value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value


class ChainSequencer:
    """
    Serializes appends to one chain.

    CONCURRENCY GUARANTEES:
    - N concurrent record_event calls produce N entries with consecutive
      indexes, each linked to its predecessor
    - Callers can bound how long they wait for the head (LockTimeoutError)
    - Readers (verifier, exporters) never take this lock
    """

    def __init__(
        self,
        store: "AuditStore",
        head: Optional[ChainHead] = None,
        lock_timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            store: Where entries are appended
            head: Recovered head. Use ChainSequencer.recover() rather than
                  passing this by hand.
            lock_timeout: Default seconds to wait for the head, None to wait forever
            clock: Source of timezone-aware timestamps
        """
        self._store = store
        self._head = head if head is not None else ChainHead()
        self._lock = threading.Lock()
        self._lock_timeout = lock_timeout
        self._clock = clock or _utcnow

    @classmethod
    def recover(
        cls,
        store: "AuditStore",
        lock_timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        verify_on_start: bool = False,
    ) -> "ChainSequencer":
        """Build a sequencer whose head is bootstrapped from the store."""
        from .recovery import bootstrap_head

        head = bootstrap_head(store, verify_on_start=verify_on_start)
        return cls(store, head=head, lock_timeout=lock_timeout, clock=clock)

    @property
    def head(self) -> ChainHead:
        """Current head. A snapshot: it may be stale as soon as it is returned."""
        return self._head

    @property
    def store(self) -> "AuditStore":
        return self._store

    def _acquire(self, timeout: Optional[float]) -> None:
        wait = self._lock_timeout if timeout is None else timeout
        if wait is None:
            acquired = self._lock.acquire()
        else:
            acquired = self._lock.acquire(timeout=max(wait, 0))
        if not acquired:
            get_metrics().record_append_failure(lock_timeout=True)
            raise LockTimeoutError(
                f"Could not acquire the chain head within {wait} seconds"
            )

    def _next_timestamp(self, head: ChainHead) -> datetime:
        timestamp = self._clock()
        if timestamp.tzinfo is None:
            raise ValueError("clock returned a timezone-naive datetime")
        if head.last_timestamp is not None and timestamp < head.last_timestamp:
            # Wall clock stepped back; keep the chain non-decreasing
            timestamp = head.last_timestamp
        return timestamp

    def append_with(
        self,
        actor_id: str,
        action: str,
        entity_type: str,
        entity_id_for: Callable[[ChainHead], str],
        timeout: Optional[float] = None,
    ) -> AuditEntry:
        """
        Append an entry whose entity_id is derived from the head inside the
        critical section.

        entity_id_for(head) runs while the head is held; if it raises,
        nothing is appended and the exception propagates.
        """
        _require_text("actor_id", actor_id)
        _require_text("action", action)
        _require_text("entity_type", entity_type)

        self._acquire(timeout)
        try:
            head = self._head
            entity_id = _require_text("entity_id", entity_id_for(head))
            timestamp = self._next_timestamp(head)

            fields = {
                "actor_id": actor_id,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "timestamp": timestamp,
            }
            entry = AuditEntry(
                entry_id=uuid4(),
                sequence_index=head.next_sequence_index,
                prev_hash=head.last_hash,
                curr_hash=Hasher.compute_link(head.last_hash, fields),
                hash_version=Hasher.SERIALIZATION_VERSION,
                **fields,
            )

            start = time.perf_counter()
            try:
                self._store.append(entry)
            except Exception:
                get_metrics().record_append_failure()
                logger.warning(
                    "Append failed, head unchanged",
                    sequence_index=entry.sequence_index,
                    action=action,
                    exc_info=True,
                )
                raise

            # Only now does the head move
            self._head = ChainHead.from_entry(entry)
            get_metrics().record_append((time.perf_counter() - start) * 1000)
        finally:
            self._lock.release()

        logger.info(
            "Entry recorded",
            sequence_index=entry.sequence_index,
            action=entry.action,
            entity_type=entry.entity_type,
        )
        return entry

    def record_event(
        self,
        actor_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        timeout: Optional[float] = None,
    ) -> AuditEntry:
        """
        Chain and durably append one event.

        Returns:
            The stored entry

        Raises:
            ValueError: a field is empty, or names a reserved action or
                entity type (checkpoints and purges go through AuditTrail)
            LockTimeoutError: the head was not acquired within timeout
            TransientStoreError: the store did not persist the entry
        """
        _require_text("action", action)
        _require_text("entity_type", entity_type)
        _require_text("entity_id", entity_id)
        if is_reserved_event(action, entity_type):
            raise ValueError(
                f"{action} on {entity_type} is reserved for entries the trail writes itself"
            )
        return self.append_with(
            actor_id,
            action,
            entity_type,
            lambda head: entity_id,
            timeout=timeout,
        )

    def resync(self, timeout: Optional[float] = None) -> ChainHead:
        """
        Reload the head from storage.

        Used after StaleHeadError, when another process has advanced the chain.
        """
        from .recovery import bootstrap_head

        self._acquire(timeout)
        try:
            previous = self._head
            self._head = bootstrap_head(self._store)
        finally:
            self._lock.release()

        logger.info(
            "Chain head resynchronized",
            previous_sequence_index=previous.last_sequence_index,
            sequence_index=self._head.last_sequence_index,
        )
        return self._head
