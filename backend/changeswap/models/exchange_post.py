"""Exchange post model — a standing "I give X, need Y" offer."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Float, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from changeswap.database import Base

DENOMINATION_TYPES = ("bill", "coins")
POST_STATUSES = ("active", "matched", "closed")


class ExchangePost(Base):
    __tablename__ = "exchange_posts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    give_amount = Column(Float, nullable=False)
    give_type = Column(String(10), nullable=False)  # bill | coins
    need_amount = Column(Float, nullable=False)
    need_type = Column(String(10), nullable=False)  # bill | coins
    need_breakdown = Column(Text, nullable=True)  # JSON list of denominations
    notes = Column(Text, nullable=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    geohash = Column(String(12), nullable=False)
    status = Column(String(10), nullable=False, default="active")  # active | matched | closed
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_exchange_posts_status_geohash", "status", "geohash"),
    )

    # Relationships
    owner = relationship("User", back_populates="posts")
