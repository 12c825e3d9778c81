"""
Admin controller — operator escape hatches for stuck playback state.

Every route requires the ADMIN role via `require_role`.  The injected
principal gives the controller the admin's identity for audit logging
without a second lookup.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.controllers.playback_controller import get_coordinator
from app.core.database import get_db
from app.core.security import Principal
from app.rbac.dependencies import require_role
from app.schemas import CleanupResponse, SweepResponse
from app.services.coordinator_service import PlaybackCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/playback", tags=["Admin"])


@router.post("/users/{user_id}/cleanup", response_model=CleanupResponse)
async def cleanup_user(
    user_id: str,
    admin: Principal = Depends(require_role("ADMIN")),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    """Force-close everything a user has open (e.g. a stuck desktop)."""
    logger.info("Admin %s forcing cleanup for user %s", admin.user_id, user_id)
    result = await coordinator.force_cleanup(user_id, db)
    return CleanupResponse(
        closed_sessions=result.closed_sessions,
        expired_devices=result.expired_devices,
    )


@router.post("/sweep", response_model=SweepResponse)
async def sweep(
    admin: Principal = Depends(require_role("ADMIN")),
    coordinator: PlaybackCoordinator = Depends(get_coordinator),
    db: AsyncSession = Depends(get_db),
):
    logger.info("Admin %s triggered a sweep", admin.user_id)
    result = await coordinator.sweep(db)
    return SweepResponse(
        expired_devices=result.expired_devices,
        abandoned_sessions=result.abandoned_sessions,
    )
