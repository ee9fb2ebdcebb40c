# Schemas for the tamper-evident audit trail.
# These define the records the chain is built from.

from .entry import (
    AuditAction,
    AuditEntry,
    AuditEvent,
    VerificationResult,
    CHAIN_ENTITY_TYPE,
    RESERVED_ACTION_PREFIX,
    SYSTEM_ACTOR,
    is_reserved_event,
)

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditEvent",
    "VerificationResult",
    "CHAIN_ENTITY_TYPE",
    "RESERVED_ACTION_PREFIX",
    "SYSTEM_ACTOR",
    "is_reserved_event",
]
