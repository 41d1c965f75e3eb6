"""Exchange history — one immutable row per rater per completed exchange."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, UniqueConstraint

from changeswap.database import Base


class ExchangeHistoryRecord(Base):
    __tablename__ = "exchange_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Not a foreign key: the match's active exchange is deleted once both parties finish
    match_id = Column(String(36), nullable=False, index=True)
    rater_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    partner_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    partner_name = Column(String(255), nullable=False)
    rating = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    duration = Column(Integer, nullable=False, default=0)  # minutes from accept to completion
    completed_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("match_id", "rater_user_id", name="uq_history_match_rater"),
    )
