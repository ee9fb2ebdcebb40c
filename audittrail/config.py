"""
Audit trail settings loaded from the environment.

Environment Variables:
    AUDITTRAIL_LOCK_TIMEOUT_SECONDS: Max wait for the chain head (default 5, "none" = forever)
    AUDITTRAIL_VERIFY_ON_START: Run a full verification during recovery
    AUDITTRAIL_EXPORT_PRIVATE_KEY: Base64 Ed25519 key used to sign export bundles
    AUDITTRAIL_EXPORT_PUBLIC_KEY: Matching public key, published with bundles
"""

import os
from dataclasses import dataclass
from typing import Optional


def _flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


@dataclass
class TrailConfig:
    """Configuration for an AuditTrail."""
    lock_timeout_seconds: Optional[float] = 5.0
    verify_on_start: bool = False
    export_private_key: Optional[str] = None
    export_public_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "TrailConfig":
        """Load configuration from environment variables."""
        raw_timeout = os.environ.get("AUDITTRAIL_LOCK_TIMEOUT_SECONDS", "5").strip().lower()
        timeout = None if raw_timeout in ("", "none") else float(raw_timeout)
        if timeout is not None and timeout < 0:
            raise ValueError("AUDITTRAIL_LOCK_TIMEOUT_SECONDS must be >= 0")

        return cls(
            lock_timeout_seconds=timeout,
            verify_on_start=_flag("AUDITTRAIL_VERIFY_ON_START"),
            export_private_key=os.environ.get("AUDITTRAIL_EXPORT_PRIVATE_KEY") or None,
            export_public_key=os.environ.get("AUDITTRAIL_EXPORT_PUBLIC_KEY") or None,
        )

    @property
    def signs_exports(self) -> bool:
        return self.export_private_key is not None
