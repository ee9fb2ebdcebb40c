# Core audit trail services
# hasher and errors first: the schemas package depends on both.
from .hasher import GENESIS_HASH, HASH_ALGORITHM, Hasher, CanonicalSerializationError
from .errors import (
    AuditTrailError,
    AuditStoreError,
    TransientStoreError,
    LockTimeoutError,
    StaleHeadError,
    IntegrityError,
    ChainContinuityError,
    HashMismatchError,
    BootstrapAmbiguityError,
)
from .sequencer import ChainHead, ChainSequencer
from .recovery import bootstrap_head
from .verifier import ChainVerifier
from .signer import Signer
from .trail import AuditTrail

__all__ = [
    "GENESIS_HASH",
    "HASH_ALGORITHM",
    "Hasher",
    "CanonicalSerializationError",
    "AuditTrailError",
    "AuditStoreError",
    "TransientStoreError",
    "LockTimeoutError",
    "StaleHeadError",
    "IntegrityError",
    "ChainContinuityError",
    "HashMismatchError",
    "BootstrapAmbiguityError",
    "ChainHead",
    "ChainSequencer",
    "bootstrap_head",
    "ChainVerifier",
    "Signer",
    "AuditTrail",
]
