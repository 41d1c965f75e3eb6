"""Notification schemas."""

from typing import Optional

from pydantic import BaseModel


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str
    data: Optional[dict] = None
    read: bool
    created_at: str
