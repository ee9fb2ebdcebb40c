"""
audittrail - tamper-evident audit trail.

Every security-relevant action becomes an entry in a SHA-256 hash chain.
Editing or deleting a stored entry breaks the chain at that entry.
"""

__version__ = "1.0.0"

from .core import (
    AuditTrail,
    ChainVerifier,
    GENESIS_HASH,
    IntegrityError,
    TransientStoreError,
)
from .schemas import AuditAction, AuditEntry, VerificationResult, SYSTEM_ACTOR

__all__ = [
    "AuditTrail",
    "ChainVerifier",
    "GENESIS_HASH",
    "IntegrityError",
    "TransientStoreError",
    "AuditAction",
    "AuditEntry",
    "VerificationResult",
    "SYSTEM_ACTOR",
]
