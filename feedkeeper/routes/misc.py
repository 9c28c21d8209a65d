"""
Miscellaneous routes: health check, scheduler status, settings.
"""

from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends

from ..auth import verify_api_key
from ..config import get_db, state
from ..database import Database
from ..database.database import REFRESH_INTERVAL_KEY, RETENTION_DAYS_KEY
from ..schemas import SettingsResponse, SettingsUpdateRequest

VERSION = "1.0.0"

# Liveness probe, no authentication
public_router = APIRouter(tags=["misc"])

router = APIRouter(tags=["misc"], dependencies=[Depends(verify_api_key)])


# ─────────────────────────────────────────────────────────────
# Health and status
# ─────────────────────────────────────────────────────────────

@public_router.get("/health")
async def health_check() -> dict:
    """API health check."""
    return {"status": "ok", "version": VERSION}


@router.get("/status")
async def status(db: Annotated[Database, Depends(get_db)]) -> dict:
    """Background scheduler state and the global refresh schedule."""
    last_refresh_at, next_refresh_at = db.get_global_schedule()
    return {
        "status": "ok",
        "version": VERSION,
        "scheduler": state.scheduler.snapshot() if state.scheduler else None,
        "global_last_refresh_at": last_refresh_at.isoformat() if last_refresh_at else None,
        "global_next_refresh_at": next_refresh_at.isoformat() if next_refresh_at else None,
        "event_subscribers": state.events.subscriber_count if state.events else 0,
    }


# ─────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────

@router.get("/settings")
async def get_settings(
    db: Annotated[Database, Depends(get_db)]
) -> SettingsResponse:
    """Get application settings."""
    last_refresh_at, next_refresh_at = db.get_global_schedule()
    return SettingsResponse(
        refresh_interval_minutes=db.get_refresh_interval_minutes(),
        retention_days=db.get_retention_days(),
        global_last_refresh_at=last_refresh_at.isoformat() if last_refresh_at else None,
        global_next_refresh_at=next_refresh_at.isoformat() if next_refresh_at else None,
    )


@router.put("/settings")
async def update_settings(
    request: SettingsUpdateRequest,
    db: Annotated[Database, Depends(get_db)]
) -> SettingsResponse:
    """
    Update application settings.

    A new refresh interval moves the next global refresh to
    last refresh + new interval.
    """
    if request.refresh_interval_minutes is not None:
        db.set_setting(REFRESH_INTERVAL_KEY, request.refresh_interval_minutes)
        last_refresh_at, _ = db.get_global_schedule()
        if last_refresh_at is not None:
            db.set_global_schedule(
                last_refresh_at,
                last_refresh_at + timedelta(minutes=request.refresh_interval_minutes),
            )
    if request.retention_days is not None:
        db.set_setting(RETENTION_DAYS_KEY, request.retention_days)

    return await get_settings(db)
