"""
Audit Entry Schema

An audit trail is append-only. Nothing is edited. Things happen.

Each entry:
- Records one security-relevant action
- Is hashed
- Is chained to the entry before it
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.errors import ChainContinuityError, HashMismatchError, IntegrityError
from ..core.hasher import GENESIS_HASH, CanonicalSerializationError, Hasher


SYSTEM_ACTOR = "system"


class AuditAction(str, Enum):
    """
    Actions recorded by the case-management applications.

    `action` on an entry is a free-form string; these are the known names.
    You can add more later, never rename.
    """
    AUTH_EXCHANGE = "auth.exchange"
    COMPLAINT_SUBMIT = "complaint.submit"
    PROFILE_UPDATE = "profile.update"
    NOTIFICATION_SETTINGS_UPDATE = "notification_settings.update"

    # Emitted by the audit trail itself
    CHECKPOINT = "audit.checkpoint"
    PURGE = "audit.purge"


CHAIN_ENTITY_TYPE = "audit_chain"

# Actions and the entity type written only by the trail itself
RESERVED_ACTION_PREFIX = "audit."


def is_reserved_event(action: str, entity_type: str) -> bool:
    return action.startswith(RESERVED_ACTION_PREFIX) or entity_type == CHAIN_ENTITY_TYPE


class AuditEvent(BaseModel):
    """The fields a collaborator supplies, plus the time the trail accepted them."""

    model_config = ConfigDict(frozen=True)

    actor_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    entity_type: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        return value


class AuditEntry(BaseModel):
    """
    The immutable audit record.

    Rules:
    - No UPDATE
    - No DELETE (except an explicit purge behind a checkpoint)
    - prev_hash of entry N is curr_hash of entry N-1
    - prev_hash of entry 0 is GENESIS_HASH
    - curr_hash reproduces from the entry's own fields
    """

    model_config = ConfigDict(frozen=True)

    entry_id: UUID = Field(
        ...,
        description="Unique identifier for this entry"
    )

    sequence_index: int = Field(
        ...,
        ge=0,
        description="Gapless position in the chain (0 for the first entry)"
    )

    actor_id: str = Field(..., min_length=1, description="Principal, or 'system'")
    action: str = Field(..., min_length=1, description="e.g. complaint.submit")
    entity_type: str = Field(..., min_length=1, description="e.g. complaint")
    entity_id: str = Field(..., min_length=1)

    prev_hash: str = Field(
        ...,
        min_length=64,
        max_length=64,
        description="curr_hash of the preceding entry, GENESIS_HASH for entry 0"
    )
    curr_hash: str = Field(
        ...,
        min_length=64,
        max_length=64,
        description="SHA-256 over prev_hash and the canonical event"
    )

    timestamp: datetime = Field(..., description="When the trail accepted the event")

    hash_version: int = Field(
        default=Hasher.SERIALIZATION_VERSION,
        description="Canonicalization scheme used for curr_hash"
    )

    @field_validator("timestamp")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        return value

    @property
    def event(self) -> AuditEvent:
        return AuditEvent(
            actor_id=self.actor_id,
            action=self.action,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            timestamp=self.timestamp,
        )

    @property
    def is_genesis(self) -> bool:
        return self.sequence_index == 0

    @property
    def is_checkpoint(self) -> bool:
        return (
            self.action == AuditAction.CHECKPOINT.value
            and self.entity_type == CHAIN_ENTITY_TYPE
        )

    def recompute_hash(self) -> str:
        return Hasher.compute_link(self.prev_hash, self, self.hash_version)

    def hash_matches(self) -> bool:
        return Hasher.verify_link(self.prev_hash, self, self.curr_hash, self.hash_version)

    def checkpoint_summary(self) -> Optional[tuple[int, str]]:
        """
        Parse the prefix summary carried by a checkpoint entry.

        Returns (last_sequence_index, last_hash) of the prefix the checkpoint
        closes, or None if this is not a well-formed checkpoint.
        """
        if not self.is_checkpoint:
            return None
        index, _, digest = self.entity_id.partition(":")
        try:
            return int(index), Hasher.normalize_hash(digest, "checkpoint hash")
        except (ValueError, CanonicalSerializationError):
            return None

    def to_export(self) -> dict:
        """Stored field values, verbatim, in a JSON-friendly shape."""
        return {
            "entry_id": str(self.entry_id),
            "sequence_index": self.sequence_index,
            "actor_id": self.actor_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "prev_hash": self.prev_hash,
            "curr_hash": self.curr_hash,
            "timestamp": Hasher.serialize_timestamp(self.timestamp),
            "hash_version": self.hash_version,
        }


class VerificationResult(BaseModel):
    """
    Outcome of walking a range of the chain.

    last_sequence_index / last_hash describe the last entry that passed,
    so a caller can seed the next incremental verification with them.
    """

    valid: bool
    broken_at: Optional[int] = None
    reason: Optional[str] = None
    failure: Optional[Literal["continuity", "hash_mismatch"]] = None

    from_index: int = 0
    entries_checked: int = 0
    last_sequence_index: Optional[int] = None
    last_hash: Optional[str] = None
    checkpoint_index: Optional[int] = None
    hash_version: int = Hasher.SERIALIZATION_VERSION

    def to_error(self) -> Optional[IntegrityError]:
        if self.valid:
            return None
        message = f"Chain broken at sequence {self.broken_at}: {self.reason}"
        if self.failure == "hash_mismatch":
            return HashMismatchError(message, self.broken_at)
        return ChainContinuityError(message, self.broken_at)

    def raise_for_failure(self) -> None:
        error = self.to_error()
        if error is not None:
            raise error


__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditEvent",
    "VerificationResult",
    "CHAIN_ENTITY_TYPE",
    "GENESIS_HASH",
    "RESERVED_ACTION_PREFIX",
    "SYSTEM_ACTOR",
    "is_reserved_event",
]
