"""Chat message — append-only log scoped to one active exchange."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Boolean, DateTime, Text

from changeswap.database import Base


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    match_id = Column(String(36), nullable=False, index=True)
    sender_id = Column(String(36), nullable=False)  # user id, or "system"
    text = Column(Text, nullable=False)
    system_message = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
