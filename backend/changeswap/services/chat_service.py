"""Chat log for active exchanges — plain append-only messages."""

import uuid

from sqlalchemy.orm import Session

from changeswap.errors import NotFound, NotAuthorized, ValidationError
from changeswap.models.active_exchange import ActiveExchange
from changeswap.models.chat_message import ChatMessage
from changeswap.services.store_retry import retry_read, transient_errors

SYSTEM_SENDER = "system"
MAX_MESSAGE_LENGTH = 500


def _participant_exchange(db: Session, match_id: str, user_id: str) -> ActiveExchange:
    exchange = db.query(ActiveExchange).filter(ActiveExchange.id == match_id).first()
    if not exchange:
        raise NotFound("Exchange not found or already finished")
    if not exchange.is_participant(user_id):
        raise NotAuthorized("Only exchange participants can use this chat")
    return exchange


def post_message(db: Session, match_id: str, sender_id: str, text: str) -> ChatMessage:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Message text is required")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")
    _participant_exchange(db, match_id, sender_id)

    message = ChatMessage(id=str(uuid.uuid4()), match_id=match_id, sender_id=sender_id, text=text)
    with transient_errors(db):
        db.add(message)
        db.commit()
    db.refresh(message)
    return message


def post_system_message(db: Session, match_id: str, text: str) -> ChatMessage:
    """Append a system line in the caller's transaction. Does not commit."""
    message = ChatMessage(
        id=str(uuid.uuid4()),
        match_id=match_id,
        sender_id=SYSTEM_SENDER,
        text=text,
        system_message=True,
    )
    db.add(message)
    return message


@retry_read
def list_messages(db: Session, match_id: str, user_id: str) -> list[ChatMessage]:
    _participant_exchange(db, match_id, user_id)
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.match_id == match_id)
        .order_by(ChatMessage.created_at.asc())
        .all()
    )


def delete_messages_for_match(db: Session, match_id: str) -> int:
    """Remove a finished exchange's chat. Safe to repeat. Does not commit."""
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.match_id == match_id)
        .delete(synchronize_session=False)
    )
