"""Notification service — user-facing notices written alongside state changes."""

import json
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from changeswap.errors import NotFound, ValidationError
from changeswap.models.notification import Notification, NOTIFICATION_TYPES
from changeswap.services.store_retry import retry_read, transient_errors


def notify(
    db: Session,
    user_id: str,
    type: str,
    title: str,
    message: str,
    data: Optional[dict] = None,
) -> Notification:
    """Queue a notification in the caller's transaction. Does not commit."""
    if type not in NOTIFICATION_TYPES:
        raise ValidationError(f"Unknown notification type '{type}'")
    notification = Notification(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=json.dumps(data) if data else None,
    )
    db.add(notification)
    return notification


@retry_read
def list_notifications(db: Session, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    return query.order_by(Notification.created_at.desc()).limit(limit).all()


def mark_read(db: Session, notification_id: str, user_id: str) -> Notification:
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if not notification:
        raise NotFound("Notification not found")
    if not notification.read:
        notification.read = True
        with transient_errors(db):
            db.commit()
        db.refresh(notification)
    return notification
