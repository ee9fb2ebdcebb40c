"""
Chain Link Hasher

Computes the hash that binds an audit entry to its predecessor.
Same inputs → same digest. On every machine, years from now.

If this changes, every stored entry stops verifying.
Any change to the rules below MUST bump SERIALIZATION_VERSION.

CANONICAL SERIALIZATION RULES (version 1):
1. Version: "__canon_v" injected into every canonical output (first key when sorted)
2. Hashed fields: actor_id, action, entity_type, entity_id, timestamp. Nothing else.
3. Dictionary keys: sorted (Unicode codepoint order)
4. Strings: preserved verbatim, including whitespace
5. Datetimes: must be timezone-aware, converted to UTC,
   formatted YYYY-MM-DDTHH:MM:SS.ffffffZ
6. UUIDs: lowercase string form
7. Enums: their value
8. Floats, bytes, sets: rejected
9. JSON output: no whitespace, sorted keys, ASCII only

LINK FORMAT:
    curr_hash = SHA256(prev_hash + ":" + canonical_event)

The first entry of a chain uses GENESIS_HASH as prev_hash, so every
entry has the same link format.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping
from uuid import UUID


GENESIS_HASH = "0" * 64
HASH_ALGORITHM = "sha256"

# Fields that enter the digest, in no particular order (keys get sorted)
HASHED_FIELDS = ("actor_id", "action", "entity_type", "entity_id", "timestamp")


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and link hashing for audit entries.

    Pure: no I/O, no clock, no locale. Everything that enters the digest
    is passed in explicitly.
    """

    SERIALIZATION_VERSION = 1
    SUPPORTED_VERSIONS = frozenset({1})

    @classmethod
    def _serialize_value(cls, value: Any, path: str) -> Any:
        if value is None:
            raise CanonicalSerializationError(
                f"Missing value at {path}. Every hashed field is required."
            )

        if isinstance(value, datetime):
            return cls.serialize_timestamp(value, path)

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, str):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in canonical payloads."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only strings, integers, UUIDs, enums and datetimes are allowed."
        )

    @staticmethod
    def serialize_timestamp(dt: datetime, path: str = "timestamp") -> str:
        """
        Serialize a datetime to the canonical form.

        Format: YYYY-MM-DDTHH:MM:SS.ffffffZ (always six microsecond digits)
        """
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "Audit timestamps must be timezone-aware."
            )

        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _event_fields(cls, event: Any) -> dict[str, Any]:
        """Pull exactly the hashed fields out of a mapping or an object."""
        fields = {}
        for name in HASHED_FIELDS:
            if isinstance(event, Mapping):
                if name not in event:
                    raise CanonicalSerializationError(f"Missing field: {name}")
                fields[name] = event[name]
            else:
                if not hasattr(event, name):
                    raise CanonicalSerializationError(f"Missing field: {name}")
                fields[name] = getattr(event, name)
        return fields

    @classmethod
    def canonicalize(cls, event: Any, version: int = SERIALIZATION_VERSION) -> str:
        """
        Convert an event to its canonical JSON string.

        Accepts an AuditEvent, an AuditEntry, or a plain mapping with the
        hashed fields. Extra keys/attributes are ignored.

        Raises:
            CanonicalSerializationError: If a field is missing or not serializable,
                or the version is unknown
        """
        if version not in cls.SUPPORTED_VERSIONS:
            raise CanonicalSerializationError(
                f"Unsupported hash version {version}. "
                f"Supported: {sorted(cls.SUPPORTED_VERSIONS)}"
            )

        fields = cls._event_fields(event)
        canonical = {"__canon_v": version}
        for key in sorted(fields):
            canonical[key] = cls._serialize_value(fields[key], key)

        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @staticmethod
    def normalize_hash(value: str, label: str = "prev_hash") -> str:
        """Validate a 64-char hex digest and return it lowercased."""
        if (
            not isinstance(value, str)
            or len(value) != 64
            or not all(c in "0123456789abcdef" for c in value.lower())
        ):
            raise CanonicalSerializationError(
                f"Invalid {label} format: {value!r}. "
                "Must be 64 hex characters."
            )
        return value.lower()

    @classmethod
    def compute_link(
        cls,
        prev_hash: str,
        event: Any,
        version: int = SERIALIZATION_VERSION,
    ) -> str:
        """
        Compute the chain link hash for an event.

        Args:
            prev_hash: curr_hash of the preceding entry, or GENESIS_HASH
            event: Object or mapping carrying the hashed fields
            version: Serialization scheme version

        Returns:
            Hex-encoded SHA-256 digest (64 characters, lowercase)
        """
        prev = cls.normalize_hash(prev_hash)
        canonical = cls.canonicalize(event, version)
        chain_input = f"{prev}:{canonical}"
        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify_link(
        cls,
        prev_hash: str,
        event: Any,
        expected_hash: str,
        version: int = SERIALIZATION_VERSION,
    ) -> bool:
        """Check that an event reproduces the expected link hash."""
        try:
            computed = cls.compute_link(prev_hash, event, version)
        except CanonicalSerializationError:
            return False
        if not isinstance(expected_hash, str):
            return False
        # Constant-time comparison
        return hmac.compare_digest(computed, expected_hash.lower())
