"""
Audit Trail Service

The one object collaborators talk to.

    trail = AuditTrail(store)
    trail.record_event("u1", "complaint.submit", "complaint", "c-100")
    trail.verify_chain().valid

ARCHITECTURE:
- ChainSequencer: owns the head, serializes appends
- ChainVerifier: read-only integrity walk
- AuditStore: durability and ordering

Construction always goes through recovery, so a restarted process
continues the chain that is already stored.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional, TYPE_CHECKING

from ..observability import get_logger, report_integrity_failure
from ..schemas import CHAIN_ENTITY_TYPE, SYSTEM_ACTOR, AuditAction, AuditEntry, VerificationResult
from .errors import StaleHeadError
from .hasher import GENESIS_HASH, HASH_ALGORITHM, Hasher
from .sequencer import ChainHead, ChainSequencer
from .signer import SIGNATURE_ALGORITHM, Signer
from .verifier import ChainVerifier

if TYPE_CHECKING:
    from ..config import TrailConfig
    from ..db.store import AuditStore

logger = get_logger(__name__)

BUNDLE_FORMAT = "audittrail.bundle"
BUNDLE_VERSION = 1


class AuditTrail:
    """
    Tamper-evident audit trail.

    GUARANTEES:
    - record_event either returns the stored entry or raises
    - A failed record_event leaves the chain head unchanged
    - verify_chain and exports never block writers
    """

    def __init__(
        self,
        store: Optional["AuditStore"] = None,
        lock_timeout: Optional[float] = None,
        verify_on_start: bool = False,
        export_private_key: Optional[str] = None,
        export_public_key: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            store: AuditStore implementation. If None, uses an InMemoryAuditStore.
            lock_timeout: Default seconds a writer waits for the head
            verify_on_start: Run a full verification during recovery
            export_private_key: Base64 Ed25519 key for signing export bundles
            export_public_key: Published alongside signed bundles; derived
                from the private key when omitted
            clock: Timestamp source (timezone-aware), for tests
        """
        if store is None:
            from ..db.store import InMemoryAuditStore
            store = InMemoryAuditStore()

        self._store = store
        self._sequencer = ChainSequencer.recover(
            store,
            lock_timeout=lock_timeout,
            clock=clock,
            verify_on_start=verify_on_start,
        )
        self._verifier = ChainVerifier(store)
        self._export_private_key = export_private_key
        if export_private_key and not export_public_key:
            export_public_key = Signer.public_key_for(export_private_key)
        self._export_public_key = export_public_key

    @classmethod
    def from_config(cls, config: "TrailConfig", store: "AuditStore") -> "AuditTrail":
        return cls(
            store,
            lock_timeout=config.lock_timeout_seconds,
            verify_on_start=config.verify_on_start,
            export_private_key=config.export_private_key,
            export_public_key=config.export_public_key,
        )

    @property
    def store(self) -> "AuditStore":
        return self._store

    @property
    def head(self) -> ChainHead:
        return self._sequencer.head

    @property
    def export_public_key(self) -> Optional[str]:
        return self._export_public_key

    # ================================================================
    # WRITES
    # ================================================================

    def record_event(
        self,
        actor_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        timeout: Optional[float] = None,
    ) -> AuditEntry:
        """
        Record one security-relevant event.

        Raises:
            ValueError: a field is empty, or uses a reserved audit.* action
                or the audit_chain entity type
            TransientStoreError: nothing was recorded; safe to retry
            IntegrityError: the head could not be resynchronized
        """
        with self._resync_on_stale(action, timeout):
            return self._sequencer.record_event(
                actor_id, action, entity_type, entity_id, timeout=timeout
            )

    @contextmanager
    def _resync_on_stale(self, action: str, timeout: Optional[float]) -> Iterator[None]:
        try:
            yield
        except StaleHeadError:
            # Another process advanced the chain. Reload so a retry can succeed.
            logger.warning("Stale chain head, resynchronizing", action=action)
            self._sequencer.resync(timeout=timeout)
            raise

    def _append_chain_entry(
        self,
        actor_id: str,
        action: AuditAction,
        entity_id_for: Callable[[ChainHead], str],
        timeout: Optional[float],
    ) -> AuditEntry:
        with self._resync_on_stale(action.value, timeout):
            return self._sequencer.append_with(
                actor_id,
                action.value,
                CHAIN_ENTITY_TYPE,
                entity_id_for,
                timeout=timeout,
            )

    def checkpoint(
        self,
        actor_id: str = SYSTEM_ACTOR,
        timeout: Optional[float] = None,
    ) -> AuditEntry:
        """
        Verify the chain and record a checkpoint summarizing it.

        The checkpoint's entity_id is "<last_sequence_index>:<last_hash>" of
        the entry it follows. A later purge may remove everything before it.

        Raises:
            IntegrityError: the chain does not verify; nothing is recorded
            ValueError: the chain is empty
        """
        result = self.verify_chain()
        result.raise_for_failure()

        def summarize(head: ChainHead) -> str:
            if head.is_empty:
                raise ValueError("Cannot checkpoint an empty chain")
            if head.last_sequence_index != result.last_sequence_index:
                # Entries landed after the walk; verify just those
                verified_to = result.last_sequence_index
                tail = self._verifier.verify(
                    from_index=0 if verified_to is None else verified_to + 1,
                    expected_seed_hash=result.last_hash,
                )
                tail.raise_for_failure()
                if tail.last_sequence_index != head.last_sequence_index:
                    raise ValueError("Chain head moved during checkpoint verification")
            return f"{head.last_sequence_index}:{head.last_hash}"

        entry = self._append_chain_entry(actor_id, AuditAction.CHECKPOINT, summarize, timeout)
        logger.info("Checkpoint recorded", sequence_index=entry.sequence_index)
        return entry

    def purge_before(
        self,
        checkpoint_index: int,
        actor_id: str = SYSTEM_ACTOR,
        timeout: Optional[float] = None,
    ) -> AuditEntry:
        """
        ADMINISTRATIVE: delete every entry below a checkpoint.

        The purge is itself recorded, with the number of removed entries
        as its entity_id.

        Returns:
            The audit.purge entry

        Raises:
            ValueError: no checkpoint at checkpoint_index
            IntegrityError: the checkpoint and what follows do not verify
        """
        checkpoint = self._store.get(checkpoint_index)
        if checkpoint is None or not checkpoint.is_checkpoint:
            raise ValueError(f"Entry {checkpoint_index} is not a checkpoint")

        result = self._verifier.verify(from_index=checkpoint_index)
        result.raise_for_failure()

        removed = self._store.purge_before(checkpoint_index)
        logger.warning(
            "Audit entries purged",
            checkpoint_index=checkpoint_index,
            removed=removed,
            actor_id=actor_id,
        )

        try:
            return self._append_chain_entry(
                actor_id, AuditAction.PURGE, lambda head: str(removed), timeout
            )
        except Exception:
            report_integrity_failure(
                "unrecorded_purge",
                f"Purged {removed} entries before checkpoint {checkpoint_index} "
                "but the purge entry was not recorded",
                checkpoint_index,
                removed=removed,
                actor_id=actor_id,
            )
            raise

    # ================================================================
    # READS
    # ================================================================

    def verify_chain(
        self,
        from_index: Optional[int] = None,
        expected_seed_hash: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify the chain (or a suffix of it).

        Args:
            from_index: First index to check, None for the whole chain
            expected_seed_hash: Verified hash of entry from_index - 1

        Raises:
            ValueError: from_index > 0 without a seed (and no checkpoint there)
        """
        return self._verifier.verify(
            from_index=from_index or 0,
            expected_seed_hash=expected_seed_hash,
        )

    def export_entries(self, from_index: int = 0) -> Iterator[dict[str, Any]]:
        """Stored entries, verbatim, ascending. Lazy."""
        if from_index < 0:
            raise ValueError("from_index must be >= 0")
        for entry in self._store.stream_from(from_index):
            yield entry.to_export()

    def export_bundle(self, from_index: int = 0) -> dict[str, Any]:
        """
        Export entries with a manifest an external tool can check.

        The manifest is signed when an export key is configured.
        Entries are exported as stored; verification is the reader's job.
        """
        entries = list(self.export_entries(from_index))

        manifest = {
            "format": BUNDLE_FORMAT,
            "bundle_version": BUNDLE_VERSION,
            "hash_algorithm": HASH_ALGORITHM,
            "hash_version": Hasher.SERIALIZATION_VERSION,
            "genesis_hash": GENESIS_HASH,
            "from_index": entries[0]["sequence_index"] if entries else from_index,
            "to_index": entries[-1]["sequence_index"] if entries else None,
            "entry_count": len(entries),
            "head_hash": entries[-1]["curr_hash"] if entries else None,
            "exported_at": Hasher.serialize_timestamp(datetime.now(timezone.utc)),
        }

        signature = None
        if self._export_private_key:
            signature = {
                "algorithm": SIGNATURE_ALGORITHM,
                "public_key": self._export_public_key,
                "value": Signer.sign_manifest(manifest, self._export_private_key),
            }

        logger.info(
            "Bundle exported",
            from_index=manifest["from_index"],
            entry_count=len(entries),
            signed=signature is not None,
        )
        return {
            "manifest": manifest,
            "entries": entries,
            "signature": signature,
        }
