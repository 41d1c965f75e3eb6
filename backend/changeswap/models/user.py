"""User model with the embedded rating aggregate."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Float, DateTime, Integer
from sqlalchemy.orm import relationship

from changeswap.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=False)
    # Rating aggregate is kept as sum + count so concurrent raters can both
    # apply an atomic increment; the average is derived on read.
    rating_sum = Column(Float, nullable=False, default=0.0)
    total_ratings = Column(Integer, nullable=False, default=0)
    completed_exchanges = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    # Relationships
    posts = relationship("ExchangePost", back_populates="owner")
    notifications = relationship("Notification", back_populates="user")

    @property
    def average_rating(self) -> float:
        if not self.total_ratings:
            return 0.0
        return self.rating_sum / self.total_ratings
