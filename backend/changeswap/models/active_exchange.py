"""Active exchange model — live session state for an accepted match.

Each participant owns one sub-record (completed, rating, notes, completed_at),
so the two parties never write the same columns.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import composite

from changeswap.database import Base


@dataclass
class PartyRecord:
    completed: bool = False
    rating: Optional[int] = None
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None


class ActiveExchange(Base):
    __tablename__ = "active_exchanges"

    # Same id as the accepted MatchRequest, so a retried accept cannot create a second row
    id = Column(String(36), ForeignKey("match_requests.id"), primary_key=True)
    post_id = Column(String(36), ForeignKey("exchange_posts.id"), nullable=False, index=True)
    requester_post_id = Column(String(36), ForeignKey("exchange_posts.id"), nullable=True)
    party_a_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)  # requester
    party_b_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)  # post owner
    initiator_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    party_a_completed = Column(Boolean, nullable=False, default=False)
    party_a_rating = Column(Integer, nullable=True)
    party_a_notes = Column(Text, nullable=True)
    party_a_completed_at = Column(DateTime, nullable=True)

    party_b_completed = Column(Boolean, nullable=False, default=False)
    party_b_rating = Column(Integer, nullable=True)
    party_b_notes = Column(Text, nullable=True)
    party_b_completed_at = Column(DateTime, nullable=True)

    # Set when the initiator opens the completion flow
    completion_started_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime, nullable=True)

    party_a = composite(PartyRecord, party_a_completed, party_a_rating, party_a_notes, party_a_completed_at)
    party_b = composite(PartyRecord, party_b_completed, party_b_rating, party_b_notes, party_b_completed_at)

    @property
    def participants(self) -> tuple[str, str]:
        return self.party_a_id, self.party_b_id

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.party_a_id, self.party_b_id)

    def partner_of(self, user_id: str) -> str:
        return self.party_b_id if user_id == self.party_a_id else self.party_a_id

    def party_of(self, user_id: str) -> PartyRecord:
        return self.party_a if user_id == self.party_a_id else self.party_b

    def set_party(self, user_id: str, record: PartyRecord) -> None:
        if user_id == self.party_a_id:
            self.party_a = record
        else:
            self.party_b = record

    @property
    def both_completed(self) -> bool:
        return bool(self.party_a_completed and self.party_b_completed)

    def may_complete(self, user_id: str) -> bool:
        """The initiator opens the completion flow; the partner may rate once it is open."""
        if not self.is_participant(user_id):
            return False
        return user_id == self.initiator_id or self.completion_started_at is not None
