"""Audit log model — immutable record of every match and exchange transition."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Text

from changeswap.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    entity_type = Column(String(50), nullable=False)  # match_request | active_exchange | post
    entity_id = Column(String(36), nullable=False, index=True)
    action = Column(String(50), nullable=False)  # created | accepted | declined | expired | completed | retired
    # "system" for sweeps, otherwise a user id
    actor_id = Column(String(36), nullable=False)
    old_data = Column(Text, nullable=True)   # JSON string
    new_data = Column(Text, nullable=True)   # JSON string
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
