"""Match request schemas."""

from typing import Optional

from pydantic import BaseModel


class MatchRequestCreate(BaseModel):
    post_id: str
    requester_post_id: Optional[str] = None
    message: Optional[str] = None


class MatchRequestResponse(BaseModel):
    id: str
    requester_id: str
    owner_id: str
    post_id: str
    requester_post_id: Optional[str] = None
    message: Optional[str] = None
    status: str
    created_at: str
    responded_at: Optional[str] = None
    expires_at: Optional[str] = None
