"""Active exchange, completion, history and chat schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class ActiveExchangeResponse(BaseModel):
    id: str
    post_id: str
    requester_post_id: Optional[str] = None
    partner_id: str
    partner_name: str
    partner_rating: float
    initiator_id: str
    is_initiator: bool
    my_completed: bool
    partner_completed: bool
    completion_started: bool
    can_complete: bool
    created_at: str
    expires_at: Optional[str] = None


class CompletionRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    notes: Optional[str] = Field(default=None, max_length=500)


class CompletionResponse(BaseModel):
    match_id: str
    status: str  # recorded | closed | already_recorded
    my_completed: bool
    partner_completed: bool
    exchange_closed: bool


class HistoryResponse(BaseModel):
    id: str
    match_id: str
    partner_user_id: str
    partner_name: str
    rating: int
    notes: Optional[str] = None
    duration: int
    completed_at: str


class ChatMessageCreate(BaseModel):
    text: str


class ChatMessageResponse(BaseModel):
    id: str
    match_id: str
    sender_id: str
    text: str
    system_message: bool
    created_at: str
