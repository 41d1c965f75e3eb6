"""Active exchange coordinator — live exchanges per user and the completion gate."""

import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from changeswap.errors import NotAuthorized, NotFound
from changeswap.models.active_exchange import ActiveExchange
from changeswap.models.exchange_post import ExchangePost
from changeswap.models.match_request import MatchRequest
from changeswap.models.user import User
from changeswap.services import audit, chat_service, completion_service, match_service
from changeswap.services.completion_service import CompletionResult
from changeswap.services.snapshot_broker import broker
from changeswap.services.store_retry import retry_read, transient_errors
from changeswap.timeutils import utcnow

logger = logging.getLogger(__name__)


def can_submit_completion(exchange: ActiveExchange, user_id: str) -> bool:
    """Whether ``user_id`` may submit their completion right now."""
    return exchange.may_complete(user_id) and not exchange.party_of(user_id).completed


def exchange_view(exchange: ActiveExchange, user_id: str, partner: Optional[User] = None) -> dict:
    partner_id = exchange.partner_of(user_id)
    return {
        "id": exchange.id,
        "post_id": exchange.post_id,
        "requester_post_id": exchange.requester_post_id,
        "partner_id": partner_id,
        "partner_name": partner.display_name if partner else "Exchange Partner",
        "partner_rating": partner.average_rating if partner else 0.0,
        "initiator_id": exchange.initiator_id,
        "is_initiator": exchange.initiator_id == user_id,
        "my_completed": exchange.party_of(user_id).completed,
        "partner_completed": exchange.party_of(partner_id).completed,
        "completion_started": exchange.completion_started_at is not None,
        "can_complete": can_submit_completion(exchange, user_id),
        "created_at": exchange.created_at,
        "expires_at": exchange.expires_at,
    }


@retry_read
def list_active_exchanges(db: Session, user_id: str) -> list[dict]:
    """Every live exchange the user takes part in, newest first."""
    exchanges = (
        db.query(ActiveExchange)
        .filter(or_(ActiveExchange.party_a_id == user_id, ActiveExchange.party_b_id == user_id))
        .order_by(ActiveExchange.created_at.desc())
        .all()
    )
    partner_ids = {e.partner_of(user_id) for e in exchanges}
    partners = {}
    if partner_ids:
        partners = {u.id: u for u in db.query(User).filter(User.id.in_(partner_ids)).all()}
    return [exchange_view(e, user_id, partners.get(e.partner_of(user_id))) for e in exchanges]


@retry_read
def get_active_exchange(db: Session, exchange_id: str, user_id: str) -> ActiveExchange:
    exchange = db.query(ActiveExchange).filter(ActiveExchange.id == exchange_id).first()
    if not exchange:
        raise NotFound("Exchange not found or already finished")
    if not exchange.is_participant(user_id):
        raise NotAuthorized("Not a participant in this exchange")
    return exchange


def start_completion(db: Session, exchange_id: str, user_id: str) -> ActiveExchange:
    """Initiator opens the completion flow so both parties can rate. Idempotent."""
    exchange = (
        db.query(ActiveExchange)
        .filter(ActiveExchange.id == exchange_id)
        .with_for_update()
        .first()
    )
    if not exchange:
        raise NotFound("Exchange not found or already finished")
    if exchange.initiator_id != user_id:
        raise NotAuthorized("Only the exchange initiator can start completion")
    if exchange.completion_started_at is None:
        exchange.completion_started_at = utcnow()
        chat_service.post_system_message(db, exchange.id, "Exchange marked as done. Please rate your partner.")
        with transient_errors(db):
            db.commit()
        db.refresh(exchange)
        broker.publish("exchanges")
        logger.info("Completion started for exchange %s", exchange_id)
    return exchange


def submit_completion(
    db: Session,
    exchange_id: str,
    user_id: str,
    rating: int,
    notes: Optional[str] = None,
) -> CompletionResult:
    """Entry point for either party's completion + rating."""
    return completion_service.submit_completion(db, exchange_id, user_id, rating, notes)


def retire_exchange(db: Session, exchange: ActiveExchange, actor_id: str = audit.SYSTEM_ACTOR) -> None:
    """Drop an unfinished exchange. Does not commit.

    If nobody has completed, the posts go back to the feed; otherwise they close.
    The accepted request moves to expired so the requester may ask again.
    """
    nobody_completed = not (exchange.party_a_completed or exchange.party_b_completed)
    post_ids = [p for p in (exchange.post_id, exchange.requester_post_id) if p]
    (
        db.query(ExchangePost)
        .filter(ExchangePost.id.in_(post_ids), ExchangePost.status == "matched")
        .update(
            {"status": "active" if nobody_completed else "closed", "updated_at": utcnow()},
            synchronize_session=False,
        )
    )
    request = db.query(MatchRequest).filter(MatchRequest.id == exchange.id).first()
    if request is not None and request.status == "accepted":
        match_service.release_accepted_request(db, request, actor_id)
    chat_service.delete_messages_for_match(db, exchange.id)
    audit.record(db, "active_exchange", exchange.id, "retired", actor_id,
                 {"party_a_completed": bool(exchange.party_a_completed),
                  "party_b_completed": bool(exchange.party_b_completed)},
                 {"posts": "active" if nobody_completed else "closed"})
    db.delete(exchange)
