"""Match request model — one user's proposal to transact against another's post."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Index, text
from sqlalchemy.orm import relationship

from changeswap.database import Base

MATCH_STATUSES = ("pending", "accepted", "declined", "expired")


class MatchRequest(Base):
    __tablename__ = "match_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    requester_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    post_id = Column(String(36), ForeignKey("exchange_posts.id"), nullable=False, index=True)
    # The requester's own offer, when the request was made from one
    requester_post_id = Column(String(36), ForeignKey("exchange_posts.id"), nullable=True)
    message = Column(Text, nullable=True)
    status = Column(String(10), nullable=False, default="pending")  # pending | accepted | declined | expired
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    responded_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # At most one open request per (requester, post)
        Index(
            "uq_open_request_per_post",
            "requester_id",
            "post_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'accepted')"),
            postgresql_where=text("status IN ('pending', 'accepted')"),
        ),
    )

    # Relationships
    post = relationship("ExchangePost", foreign_keys=[post_id])
    requester = relationship("User", foreign_keys=[requester_id])
    owner = relationship("User", foreign_keys=[owner_id])
