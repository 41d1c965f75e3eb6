"""Exchanges router — active exchanges, completion, history and chat."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from changeswap.database import get_db
from changeswap.middleware.auth import get_current_user
from changeswap.models.chat_message import ChatMessage
from changeswap.models.user import User
from changeswap.routers.matches import exchange_to_response
from changeswap.schemas.exchange import (
    ActiveExchangeResponse,
    CompletionRequest,
    CompletionResponse,
    HistoryResponse,
    ChatMessageCreate,
    ChatMessageResponse,
)
from changeswap.services import chat_service, completion_service, exchange_service
from changeswap.timeutils import isoformat

router = APIRouter(prefix="/api/exchanges", tags=["exchanges"])


def _message_to_response(message: ChatMessage) -> ChatMessageResponse:
    return ChatMessageResponse(
        id=message.id,
        match_id=message.match_id,
        sender_id=message.sender_id,
        text=message.text,
        system_message=bool(message.system_message),
        created_at=isoformat(message.created_at),
    )


def _exchange_response(db: Session, exchange, user_id: str) -> ActiveExchangeResponse:
    partner = db.query(User).filter(User.id == exchange.partner_of(user_id)).first()
    return exchange_to_response(exchange_service.exchange_view(exchange, user_id, partner))


@router.get("/active", response_model=list[ActiveExchangeResponse])
def active_exchanges(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Every live exchange the current user takes part in."""
    return [exchange_to_response(v) for v in exchange_service.list_active_exchanges(db, current_user.id)]


@router.get("/history", response_model=list[HistoryResponse])
def exchange_history(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """The current user's completed exchanges, newest first."""
    return [
        HistoryResponse(
            id=h.id,
            match_id=h.match_id,
            partner_user_id=h.partner_user_id,
            partner_name=h.partner_name,
            rating=h.rating,
            notes=h.notes,
            duration=h.duration,
            completed_at=isoformat(h.completed_at),
        )
        for h in completion_service.list_history(db, current_user.id, limit)
    ]


@router.get("/{exchange_id}", response_model=ActiveExchangeResponse)
def get_exchange(
    exchange_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    exchange = exchange_service.get_active_exchange(db, exchange_id, current_user.id)
    return _exchange_response(db, exchange, current_user.id)


@router.post("/{exchange_id}/start-completion", response_model=ActiveExchangeResponse)
def start_completion(
    exchange_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Initiator marks the exchange as done so both parties can rate."""
    exchange = exchange_service.start_completion(db, exchange_id, current_user.id)
    return _exchange_response(db, exchange, current_user.id)


@router.post("/{exchange_id}/complete", response_model=CompletionResponse)
def complete_exchange(
    exchange_id: str,
    req: CompletionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Submit this party's completion and rating of the partner."""
    result = exchange_service.submit_completion(db, exchange_id, current_user.id, req.rating, req.notes)
    return CompletionResponse(
        match_id=result.match_id,
        status=result.status,
        my_completed=result.my_completed,
        partner_completed=result.partner_completed,
        exchange_closed=result.exchange_closed,
    )


@router.get("/{exchange_id}/messages", response_model=list[ChatMessageResponse])
def list_messages(
    exchange_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return [_message_to_response(m) for m in chat_service.list_messages(db, exchange_id, current_user.id)]


@router.post("/{exchange_id}/messages", response_model=ChatMessageResponse, status_code=201)
def post_message(
    exchange_id: str,
    req: ChatMessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _message_to_response(chat_service.post_message(db, exchange_id, current_user.id, req.text))
