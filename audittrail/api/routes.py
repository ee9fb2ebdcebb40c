"""
Administrative API for the Audit Trail

Read-only operator endpoints plus checkpoint creation.
There is deliberately no endpoint that records arbitrary events:
collaborators call AuditTrail.record_event in-process.

- GET  /audit/integrity   - Verify the chain (or a suffix)
- GET  /audit/head        - Current chain head
- GET  /audit/entries     - Stored entries, verbatim
- GET  /audit/export      - Bundle with (optionally signed) manifest
- POST /audit/checkpoints - Verify and record a checkpoint
"""

from datetime import datetime
from itertools import islice
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core import AuditTrail, IntegrityError, TransientStoreError
from ..schemas import SYSTEM_ACTOR, VerificationResult
from ..shared_trail import get_trail


router = APIRouter(prefix="/audit", tags=["Audit"])


# ============================================================
# Request/Response Models
# ============================================================

class HeadResponse(BaseModel):
    """Chain head summary."""
    last_sequence_index: int
    next_sequence_index: int
    last_hash: str
    last_timestamp: Optional[datetime] = None
    entry_count: int
    is_empty: bool


class CheckpointRequest(BaseModel):
    """Request to record a checkpoint."""
    actor_id: str = Field(default=SYSTEM_ACTOR, min_length=1)


class EntryResponse(BaseModel):
    """A recorded entry."""
    entry_id: str
    sequence_index: int
    actor_id: str
    action: str
    entity_type: str
    entity_id: str
    prev_hash: str
    curr_hash: str
    timestamp: str
    hash_version: int


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, TransientStoreError):
        return HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, IntegrityError):
        return HTTPException(
            status.HTTP_409_CONFLICT,
            detail={"error": e.kind, "sequence_index": e.sequence_index, "message": str(e)},
        )
    return HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(e))


# ============================================================
# Endpoints
# ============================================================

@router.get(
    "/integrity",
    response_model=VerificationResult,
    summary="Verify the hash chain",
)
def verify_integrity(
    from_index: int = Query(0, ge=0),
    seed_hash: Optional[str] = Query(None, min_length=64, max_length=64),
    trail: AuditTrail = Depends(get_trail),
):
    """
    Walk the chain and recompute every link.

    Returns 200 whether or not the chain is intact; read `valid`.
    Verifying from an index > 0 requires `seed_hash` unless the entry
    there is a checkpoint.
    """
    try:
        return trail.verify_chain(from_index=from_index, expected_seed_hash=seed_hash)
    except (TransientStoreError, IntegrityError, ValueError) as e:
        raise _http_error(e)


@router.get("/head", response_model=HeadResponse, summary="Current chain head")
def get_head(trail: AuditTrail = Depends(get_trail)):
    head = trail.head
    try:
        entry_count = trail.store.count()
    except TransientStoreError as e:
        raise _http_error(e)
    return HeadResponse(
        last_sequence_index=head.last_sequence_index,
        next_sequence_index=head.next_sequence_index,
        last_hash=head.last_hash,
        last_timestamp=head.last_timestamp,
        entry_count=entry_count,
        is_empty=head.is_empty,
    )


@router.get(
    "/entries",
    response_model=list[EntryResponse],
    summary="List stored entries",
)
def list_entries(
    from_index: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    trail: AuditTrail = Depends(get_trail),
):
    """Entries exactly as stored, ascending from `from_index`."""
    try:
        return list(islice(trail.export_entries(from_index), limit))
    except (TransientStoreError, ValueError) as e:
        raise _http_error(e)


@router.get("/export", summary="Export a verification bundle")
def export_bundle(
    from_index: int = Query(0, ge=0),
    trail: AuditTrail = Depends(get_trail),
) -> dict[str, Any]:
    """
    Entries plus a manifest, signed when an export key is configured.

    Check the result offline with `python tools/verify.py bundle.json`.
    """
    try:
        return trail.export_bundle(from_index)
    except (TransientStoreError, ValueError) as e:
        raise _http_error(e)


@router.post(
    "/checkpoints",
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a checkpoint",
)
def create_checkpoint(
    request: Optional[CheckpointRequest] = None,
    trail: AuditTrail = Depends(get_trail),
):
    """
    Verify the chain, then record a checkpoint entry summarizing it.

    409 if the chain does not verify; nothing is recorded in that case.
    """
    actor_id = request.actor_id if request else SYSTEM_ACTOR
    try:
        entry = trail.checkpoint(actor_id=actor_id)
    except (TransientStoreError, IntegrityError, ValueError) as e:
        raise _http_error(e)
    return entry.to_export()
