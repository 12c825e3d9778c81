"""
Playback controller — the coordinator's public surface.

Every route is authenticated; the user id always comes from the bearer
token, never from the request body.  Controllers are THIN — they
delegate to the coordinator and return schemas.

Conflicts surface as 409 via the BusinessConflict handler registered in
`create_app`, never as an error status from these functions.
"""

import uuid

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import Principal, get_current_principal
from app.models.session import DeviceClass
from app.schemas import (
    CleanupResponse,
    ConflictResponse,
    EndSessionRequest,
    HeartbeatRequest,
    MessageResponse,
    SessionOut,
    StartSessionRequest,
    StartSessionResponse,
    StatusCheckResponse,
)
from app.services.coordinator_service import PlaybackCoordinator

router = APIRouter(prefix="/api/playback", tags=["Playback"])


def get_coordinator(request: Request) -> PlaybackCoordinator:
    return request.app.state.coordinator


# ── Sessions ─────────────────────────────────────────────────────────
@router.post(
    "/sessions",
    response_model=StartSessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ConflictResponse}},
)
async def start_session(
    body: StartSessionRequest,
    principal: Principal = Depends(get_current_principal),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    """Must succeed before the client starts playing."""
    result = await coordinator.start_session(
        principal.user_id,
        body.device_class,
        db,
        device_token=body.device_token,
    )
    return StartSessionResponse(session_id=result.session_id, reused=result.reused)


@router.post("/sessions/{session_id}/end", response_model=MessageResponse)
async def end_session(
    session_id: uuid.UUID,
    body: EndSessionRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    reason = body.reason if body is not None else EndSessionRequest().reason
    closed = await coordinator.end_session(principal.user_id, session_id, db, reason=reason)
    if closed:
        return MessageResponse(detail="Session ended")
    return MessageResponse(detail="Session already ended")


@router.get("/sessions", response_model=list[SessionOut])
async def list_sessions(
    principal: Principal = Depends(get_current_principal),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    """The caller's sessions started in the last hour."""
    sessions = await coordinator.list_sessions(principal.user_id, db)
    return [SessionOut.model_validate(s) for s in sessions]


# ── Liveness ─────────────────────────────────────────────────────────
@router.post("/heartbeat", status_code=status.HTTP_204_NO_CONTENT)
async def heartbeat(
    body: HeartbeatRequest,
    principal: Principal = Depends(get_current_principal),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    await coordinator.heartbeat(principal.user_id, body.device_token, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/devices/{device_token}", status_code=status.HTTP_204_NO_CONTENT)
async def release_device(
    device_token: str,
    principal: Principal = Depends(get_current_principal),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    """Desktop shutdown: drop the device's liveness immediately."""
    await coordinator.release_device(principal.user_id, device_token, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Status ───────────────────────────────────────────────────────────
@router.get("/status", response_model=StatusCheckResponse)
async def status_check(
    device_class: DeviceClass = Query(..., alias="deviceClass"),
    session_id: uuid.UUID | None = Query(None, alias="sessionId"),
    principal: Principal = Depends(get_current_principal),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    view = await coordinator.status_check(
        principal.user_id, device_class, db, session_id=session_id,
    )
    return StatusCheckResponse(has_conflict=view.has_conflict, owner_class=view.owner_class)


# ── Cleanup ──────────────────────────────────────────────────────────
@router.post("/cleanup", response_model=CleanupResponse)
async def force_cleanup(
    principal: Principal = Depends(get_current_principal),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    """Close every open session and forget every device of the caller."""
    result = await coordinator.force_cleanup(principal.user_id, db)
    return CleanupResponse(
        closed_sessions=result.closed_sessions,
        expired_devices=result.expired_devices,
    )
