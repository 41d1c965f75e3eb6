"""Mutual completion & rating aggregator.

Each participant independently submits a rating (1-5) and optional notes for
an active exchange, at any time and in either order once the initiator has
opened the completion flow. A submission is applied in one transaction with
the exchange row locked:

    1. immutable UserRating row (unique per match + rater)
    2. the caller's own party sub-record on the ActiveExchange
    3. atomic increment of the partner's rating sum/count and exchange count
    4. the caller's ExchangeHistoryRecord (unique per match + rater)
    5. if the partner had already submitted: delete the exchange and its chat,
       close the post(s)

Repeating a submission, or racing the final delete, is a no-op.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from changeswap.errors import NotAuthorized, NotFound, StateConflict, ValidationError
from changeswap.models.active_exchange import ActiveExchange, PartyRecord
from changeswap.models.exchange_history import ExchangeHistoryRecord
from changeswap.models.exchange_post import ExchangePost
from changeswap.models.user import User
from changeswap.models.user_rating import UserRating
from changeswap.services import audit, chat_service
from changeswap.services.notification_service import notify
from changeswap.services.snapshot_broker import broker
from changeswap.services.store_retry import retry_read, transient_errors
from changeswap.timeutils import utcnow, minutes_between

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 500


@dataclass(frozen=True)
class CompletionResult:
    match_id: str
    status: str  # recorded | closed | already_recorded
    my_completed: bool
    partner_completed: bool
    exchange_closed: bool


def _validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationError("rating must be an integer from 1 to 5")
    if rating < 1 or rating > 5:
        raise ValidationError("rating must be between 1 and 5")
    return rating


def _validate_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    if len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"notes must be at most {MAX_NOTES_LENGTH} characters")
    return notes


def _already_recorded(match_id: str, closed: bool, partner_completed: bool = True) -> CompletionResult:
    return CompletionResult(
        match_id=match_id,
        status="already_recorded",
        my_completed=True,
        partner_completed=partner_completed,
        exchange_closed=closed,
    )


def close_posts(db: Session, exchange: ActiveExchange) -> None:
    """Posts tied to a finished exchange end as closed. Does not commit."""
    post_ids = [p for p in (exchange.post_id, exchange.requester_post_id) if p]
    (
        db.query(ExchangePost)
        .filter(ExchangePost.id.in_(post_ids), ExchangePost.status == "matched")
        .update({"status": "closed", "updated_at": utcnow()}, synchronize_session=False)
    )


def submit_completion(
    db: Session,
    exchange_id: str,
    user_id: str,
    rating: int,
    notes: Optional[str] = None,
) -> CompletionResult:
    """Record one participant's completion and rating; close the exchange when both are in."""
    rating = _validate_rating(rating)
    notes = _validate_notes(notes)

    exchange = (
        db.query(ActiveExchange)
        .filter(ActiveExchange.id == exchange_id)
        .with_for_update()
        .first()
    )
    if exchange is None:
        prior = (
            db.query(UserRating)
            .filter(UserRating.match_id == exchange_id, UserRating.rater_user_id == user_id)
            .first()
        )
        if prior:
            logger.info("Completion for %s by %s already applied; exchange closed", exchange_id, user_id)
            return _already_recorded(exchange_id, closed=True)
        raise NotFound("Exchange not found")

    if not exchange.is_participant(user_id):
        raise NotAuthorized("Only exchange participants can complete it")

    partner_id = exchange.partner_of(user_id)
    partner_done = exchange.party_of(partner_id).completed
    if exchange.party_of(user_id).completed:
        return _already_recorded(exchange_id, closed=False, partner_completed=partner_done)
    if not exchange.may_complete(user_id):
        raise StateConflict("Waiting for the exchange initiator to start completion")

    partner = db.query(User).filter(User.id == partner_id).first()
    partner_name = partner.display_name if partner else "Exchange Partner"
    now = utcnow()

    db.add(UserRating(
        id=str(uuid.uuid4()),
        match_id=exchange_id,
        rater_user_id=user_id,
        rated_user_id=partner_id,
        rating=rating,
        notes=notes,
        created_at=now,
    ))

    exchange.set_party(user_id, PartyRecord(completed=True, rating=rating, notes=notes, completed_at=now))
    if exchange.completion_started_at is None:
        exchange.completion_started_at = now

    (
        db.query(User)
        .filter(User.id == partner_id)
        .update(
            {
                User.rating_sum: User.rating_sum + rating,
                User.total_ratings: User.total_ratings + 1,
                User.completed_exchanges: User.completed_exchanges + 1,
            },
            synchronize_session=False,
        )
    )

    db.add(ExchangeHistoryRecord(
        id=str(uuid.uuid4()),
        match_id=exchange_id,
        rater_user_id=user_id,
        partner_user_id=partner_id,
        partner_name=partner_name,
        rating=rating,
        notes=notes,
        duration=minutes_between(exchange.created_at, now),
        completed_at=now,
    ))
    notify(
        db, partner_id, "rating_received",
        "New Rating",
        f"Your exchange partner rated you {rating}/5.",
        {"matchId": exchange_id, "rating": rating},
    )

    closing = partner_done
    if closing:
        close_posts(db, exchange)
        chat_service.delete_messages_for_match(db, exchange_id)
        for uid in exchange.participants:
            notify(
                db, uid, "exchange_completed",
                "Exchange Completed!",
                "Both of you confirmed the exchange. Thanks for swapping!",
                {"matchId": exchange_id},
            )
        audit.record(db, "active_exchange", exchange_id, "completed", user_id,
                     None, {"party_a_rating": exchange.party_a_rating,
                            "party_b_rating": exchange.party_b_rating})
        db.delete(exchange)

    try:
        with transient_errors(db):
            db.commit()
    except IntegrityError:
        # A concurrent duplicate submission won the unique constraint.
        db.rollback()
        logger.warning("Duplicate completion for %s by %s ignored", exchange_id, user_id)
        return _already_recorded(exchange_id, closed=False, partner_completed=partner_done)

    broker.publish("exchanges", *(("posts",) if closing else ()))
    logger.info(
        "Completion recorded for %s by %s (rating %d)%s",
        exchange_id, user_id, rating, "; exchange closed" if closing else "",
    )
    return CompletionResult(
        match_id=exchange_id,
        status="closed" if closing else "recorded",
        my_completed=True,
        partner_completed=partner_done,
        exchange_closed=closing,
    )


@retry_read
def list_history(db: Session, user_id: str, limit: int = 50) -> list[ExchangeHistoryRecord]:
    """The user's own history rows, newest first."""
    return (
        db.query(ExchangeHistoryRecord)
        .filter(ExchangeHistoryRecord.rater_user_id == user_id)
        .order_by(ExchangeHistoryRecord.completed_at.desc())
        .limit(limit)
        .all()
    )


@retry_read
def get_rating_summary(db: Session, user_id: str) -> dict:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found")
    return {
        "user_id": user.id,
        "display_name": user.display_name,
        "average_rating": user.average_rating,
        "total_ratings": user.total_ratings,
        "completed_exchanges": user.completed_exchanges,
    }
