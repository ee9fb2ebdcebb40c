"""
Audit trail exceptions.

Two families with different handling:
- TransientStoreError: the write did not happen, the head did not move,
  the caller may retry the same event.
- IntegrityError: recorded history is inconsistent. Never retried, never
  repaired automatically. Goes to the integrity alert channel.
"""

from typing import Optional


class AuditTrailError(Exception):
    """Base exception for audit trail errors."""
    pass


class AuditStoreError(AuditTrailError):
    """Raised when the store rejects an operation for a non-transient reason."""
    pass


class TransientStoreError(AuditTrailError):
    """Raised when an append or read failed for a recoverable reason."""
    pass


class LockTimeoutError(TransientStoreError):
    """Raised when the chain head could not be acquired in time."""
    pass


class StaleHeadError(TransientStoreError):
    """Raised when another writer already used the sequence index."""
    pass


class IntegrityError(AuditTrailError):
    """
    Base for errors that indicate tampering or corruption.

    Carries the sequence index where the problem was found, when known.
    """

    kind = "integrity"

    def __init__(self, message: str, sequence_index: Optional[int] = None):
        super().__init__(message)
        self.sequence_index = sequence_index


class ChainContinuityError(IntegrityError):
    """Raised when prev_hash, sequence index or timestamp order is broken."""

    kind = "continuity"


class HashMismatchError(IntegrityError):
    """Raised when a stored curr_hash does not reproduce from its fields."""

    kind = "hash_mismatch"


class BootstrapAmbiguityError(IntegrityError):
    """Raised when the store cannot name a single authoritative chain head."""

    kind = "bootstrap_ambiguity"
