from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from ..schemas import BlockInfoResponse, ManualBlockRequest, SecurityEventAccepted, SecurityEventRequest
from ..security import AuthContext, require_admin
from ..security_events import BlockRecord, SecurityEventTracker, UnknownEventKind

router = APIRouter(prefix="/api/security", tags=["security"])
logger = logging.getLogger("squadguard.admin")


def get_tracker(request: Request) -> SecurityEventTracker:
    return request.app.state.tracker


def _block_response(identifier: str, block: BlockRecord) -> BlockInfoResponse:
    return BlockInfoResponse(
        identifier=identifier,
        reason=block.reason,
        blocked_at=block.blocked_at_dt,
        expires_at=block.expires_at_dt,
    )


@router.get("/blocks", response_model=list[BlockInfoResponse])
async def list_blocks(
    tracker: SecurityEventTracker = Depends(get_tracker),
    _admin: AuthContext = Depends(require_admin),
) -> list[BlockInfoResponse]:
    return [_block_response(identifier, block) for identifier, block in tracker.active_blocks()]


@router.get("/blocks/{identifier}", response_model=BlockInfoResponse)
async def block_info(
    identifier: str,
    tracker: SecurityEventTracker = Depends(get_tracker),
    _admin: AuthContext = Depends(require_admin),
) -> BlockInfoResponse:
    block = tracker.get_block_info(identifier)
    if block is None:
        raise HTTPException(status_code=404, detail="Identifier is not blocked")
    return _block_response(identifier, block)


@router.post("/blocks", response_model=BlockInfoResponse, status_code=201)
async def create_block(
    payload: ManualBlockRequest,
    tracker: SecurityEventTracker = Depends(get_tracker),
    admin: AuthContext = Depends(require_admin),
) -> BlockInfoResponse:
    block = tracker.block_identifier(payload.identifier, reason=payload.reason, duration_seconds=payload.duration_seconds)
    logger.info(
        "Manual block created",
        extra={"event": "manual_block", "ip": payload.identifier, "reason": f"{payload.reason} by {admin.subject}"},
    )
    return _block_response(payload.identifier, block)


@router.delete("/blocks/{identifier}", status_code=204)
async def remove_block(
    identifier: str,
    tracker: SecurityEventTracker = Depends(get_tracker),
    _admin: AuthContext = Depends(require_admin),
) -> Response:
    if not tracker.unblock(identifier):
        raise HTTPException(status_code=404, detail="Identifier is not blocked")
    return Response(status_code=204)


@router.post("/events", response_model=SecurityEventAccepted, status_code=202)
async def report_event(
    payload: SecurityEventRequest,
    tracker: SecurityEventTracker = Depends(get_tracker),
    _admin: AuthContext = Depends(require_admin),
) -> SecurityEventAccepted:
    """Record a security event observed by another service."""

    try:
        tracker.record_event(payload.kind, payload.identifier, payload.context)
    except UnknownEventKind as exc:
        raise HTTPException(status_code=400, detail=f"Unknown event kind: {payload.kind}") from exc

    return SecurityEventAccepted(
        kind=payload.kind.lower(),
        identifier=payload.identifier,
        blocked=tracker.is_blocked(payload.identifier),
    )
