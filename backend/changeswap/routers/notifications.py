"""Notifications router."""

import json

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from changeswap.database import get_db
from changeswap.middleware.auth import get_current_user
from changeswap.models.notification import Notification
from changeswap.models.user import User
from changeswap.schemas.notification import NotificationResponse
from changeswap.services import notification_service
from changeswap.timeutils import isoformat

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _notification_to_response(n: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=n.id,
        type=n.type,
        title=n.title,
        message=n.message,
        data=json.loads(n.data) if n.data else None,
        read=bool(n.read),
        created_at=isoformat(n.created_at),
    )


@router.get("", response_model=list[NotificationResponse])
def list_notifications(
    unread_only: bool = False,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    notifications = notification_service.list_notifications(db, current_user.id, unread_only)
    return [_notification_to_response(n) for n in notifications]


@router.post("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _notification_to_response(notification_service.mark_read(db, notification_id, current_user.id))
