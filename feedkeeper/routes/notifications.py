"""
Notification routes: the consumer side of the rule notification queue.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import verify_api_key
from ..config import DEFAULT_USER_ID, get_db
from ..database import Database
from ..schemas import NotificationResponse

router = APIRouter(
    prefix="/notifications",
    tags=["notifications"],
    dependencies=[Depends(verify_api_key)]
)


@router.get("")
async def list_notifications(
    db: Annotated[Database, Depends(get_db)],
    include_dismissed: bool = False,
    limit: int = Query(default=50, ge=1, le=500)
) -> list[NotificationResponse]:
    """Queued notifications, newest first."""
    notifications = db.get_notifications(DEFAULT_USER_ID, include_dismissed, limit)
    return [NotificationResponse.from_db(n) for n in notifications]


@router.post("/dismiss-all")
async def dismiss_all(db: Annotated[Database, Depends(get_db)]) -> dict:
    dismissed = db.dismiss_all_notifications(DEFAULT_USER_ID)
    return {"success": True, "dismissed": dismissed}


@router.post("/{notification_id}/dismiss")
async def dismiss_notification(
    notification_id: int,
    db: Annotated[Database, Depends(get_db)]
) -> dict:
    if not db.dismiss_notification(notification_id, DEFAULT_USER_ID):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}
