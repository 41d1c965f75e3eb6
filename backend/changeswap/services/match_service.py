"""Match request service — the request/accept/decline state machine.

    pending ──accept──▶ accepted   (post flips active→matched, ActiveExchange created)
       │  ──decline─▶ declined
       └──expire───▶ expired

Transitions are one-way. Only the post owner moves a request out of pending;
the requester never touches it after creation.
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from changeswap.config import settings
from changeswap.errors import (
    DuplicateRequest,
    NotAuthorized,
    NotFound,
    StateConflict,
    ValidationError,
)
from changeswap.models.active_exchange import ActiveExchange, PartyRecord
from changeswap.models.exchange_post import ExchangePost
from changeswap.models.match_request import MatchRequest
from changeswap.services import audit, chat_service, post_store
from changeswap.services.notification_service import notify
from changeswap.services.snapshot_broker import broker
from changeswap.services.store_retry import retry_read, transient_errors
from changeswap.timeutils import utcnow, ensure_utc

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    "pending": {"accepted", "declined", "expired"},
    # An accepted request expires when its exchange is retired unfinished
    "accepted": {"expired"},
    "declined": set(),
    "expired": set(),
}
OPEN_STATUSES = ("pending", "accepted")
MAX_MESSAGE_LENGTH = 500


def _transition(request: MatchRequest, new_status: str) -> str:
    """Apply a one-way status change, returning the old status."""
    if new_status not in VALID_TRANSITIONS.get(request.status, set()):
        raise StateConflict(
            f"Cannot move match request from '{request.status}' to '{new_status}'"
        )
    old_status = request.status
    request.status = new_status
    request.responded_at = utcnow()
    return old_status


def is_expired(request: MatchRequest, now=None) -> bool:
    if request.status != "pending" or request.expires_at is None:
        return False
    return ensure_utc(request.expires_at) <= (now or utcnow())


def expire_request(db: Session, request: MatchRequest, actor_id: str = audit.SYSTEM_ACTOR) -> None:
    """Mark a stale pending request expired. Does not commit."""
    old_status = _transition(request, "expired")
    notify(
        db, request.requester_id, "match_expired",
        "Match Request Expired",
        "Your exchange request expired before the owner responded.",
        {"matchId": request.id, "postId": request.post_id},
    )
    audit.record(db, "match_request", request.id, "expired", actor_id,
                 {"status": old_status}, {"status": "expired"})


def release_accepted_request(db: Session, request: MatchRequest, actor_id: str = audit.SYSTEM_ACTOR) -> None:
    """Move an accepted request whose exchange was abandoned to expired. Does not commit.

    The requester may then ask for the post again.
    """
    old_status = _transition(request, "expired")
    audit.record(db, "match_request", request.id, "expired", actor_id,
                 {"status": old_status}, {"status": "expired", "reason": "exchange_retired"})


def decline_pending_for_post(
    db: Session,
    post_id: str,
    actor_id: str,
    reason: str,
    message: str,
    exclude_id: Optional[str] = None,
) -> list[MatchRequest]:
    """Decline every pending request on a post, notifying each requester. Does not commit."""
    query = db.query(MatchRequest).filter(
        MatchRequest.post_id == post_id,
        MatchRequest.status == "pending",
    )
    if exclude_id:
        query = query.filter(MatchRequest.id != exclude_id)
    declined = query.all()
    for other in declined:
        _transition(other, "declined")
        notify(
            db, other.requester_id, "match_declined",
            "Match Declined",
            message,
            {"matchId": other.id, "postId": other.post_id},
        )
        audit.record(db, "match_request", other.id, "declined", actor_id,
                     {"status": "pending"}, {"status": "declined", "reason": reason})
    return declined


def _locked_request(db: Session, request_id: str, actor_id: str) -> MatchRequest:
    request = (
        db.query(MatchRequest)
        .filter(MatchRequest.id == request_id)
        .with_for_update()
        .first()
    )
    if not request:
        raise NotFound("Match request not found")
    if request.owner_id != actor_id:
        raise NotAuthorized("Only the post owner can respond to this request")
    return request


def _reject_if_expired(db: Session, request: MatchRequest) -> None:
    if is_expired(request):
        expire_request(db, request)
        with transient_errors(db):
            db.commit()
        broker.publish("matches")
        raise StateConflict("Match request has expired")


def create_match_request(
    db: Session,
    requester_id: str,
    post_id: str,
    requester_post_id: Optional[str] = None,
    message: Optional[str] = None,
) -> MatchRequest:
    """Submit a request against someone else's active post."""
    post = db.query(ExchangePost).filter(ExchangePost.id == post_id).first()
    if not post:
        raise NotFound("Post not found")
    if post.user_id == requester_id:
        raise ValidationError("Cannot request a match on your own post")
    if post.status != "active":
        raise StateConflict(f"Post is not available (status: {post.status})")
    if message is not None and len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"message must be at most {MAX_MESSAGE_LENGTH} characters")

    if requester_post_id:
        own = db.query(ExchangePost).filter(ExchangePost.id == requester_post_id).first()
        if not own or own.user_id != requester_id:
            raise ValidationError("requester_post_id must be one of your own posts")
        if own.status != "active":
            raise StateConflict("Your offer is no longer active")

    existing = (
        db.query(MatchRequest)
        .filter(
            MatchRequest.requester_id == requester_id,
            MatchRequest.post_id == post_id,
            MatchRequest.status.in_(OPEN_STATUSES),
        )
        .first()
    )
    if existing:
        raise DuplicateRequest("You already have an open request for this post")

    now = utcnow()
    cooldown = settings.MATCH_REQUEST_COOLDOWN_MINUTES
    if cooldown > 0:
        recent = (
            db.query(MatchRequest)
            .filter(
                MatchRequest.requester_id == requester_id,
                MatchRequest.owner_id == post.user_id,
                MatchRequest.created_at >= now - timedelta(minutes=cooldown),
            )
            .first()
        )
        if recent:
            raise StateConflict(
                f"You can send another request to this user in {cooldown} minutes"
            )

    ttl = settings.MATCH_REQUEST_TTL_HOURS
    request = MatchRequest(
        id=str(uuid.uuid4()),
        requester_id=requester_id,
        owner_id=post.user_id,
        post_id=post_id,
        requester_post_id=requester_post_id,
        message=message,
        status="pending",
        created_at=now,
        expires_at=now + timedelta(hours=ttl) if ttl > 0 else None,
    )
    db.add(request)
    notify(
        db, post.user_id, "match_found",
        "New Match Request!",
        f"Someone wants to exchange with you: ₱{post.need_amount:g} {post.need_type} "
        f"for your ₱{post.give_amount:g} {post.give_type}",
        {"matchId": request.id, "postId": post_id},
    )
    audit.record(db, "match_request", request.id, "created", requester_id,
                 None, {"status": "pending", "post_id": post_id})
    try:
        with transient_errors(db):
            db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateRequest("You already have an open request for this post")

    db.refresh(request)
    broker.publish("matches")
    logger.info("Match request %s: %s -> post %s", request.id, requester_id, post_id)
    return request


def accept_match_request(db: Session, request_id: str, actor_id: str) -> ActiveExchange:
    """Owner accepts: claim the post, open the ActiveExchange, decline the rest.

    All writes share one transaction; any failure leaves nothing behind.
    """
    request = _locked_request(db, request_id, actor_id)
    _reject_if_expired(db, request)
    if request.status != "pending":
        raise StateConflict(f"Match request is already {request.status}")

    if not post_store.compare_and_set_status(db, request.post_id, "active", "matched"):
        db.rollback()
        raise StateConflict("Post is no longer available")
    # The requester's own offer leaves the feed too. If it is already claimed by
    # another exchange or withdrawn, this exchange does not own it.
    requester_post_id = request.requester_post_id
    if requester_post_id and not post_store.compare_and_set_status(db, requester_post_id, "active", "matched"):
        requester_post_id = None

    _transition(request, "accepted")

    now = utcnow()
    ttl = settings.ACTIVE_EXCHANGE_TTL_HOURS
    exchange = ActiveExchange(
        id=request.id,
        post_id=request.post_id,
        requester_post_id=requester_post_id,
        party_a_id=request.requester_id,
        party_b_id=request.owner_id,
        initiator_id=request.requester_id,
        party_a=PartyRecord(),
        party_b=PartyRecord(),
        created_at=now,
        expires_at=now + timedelta(hours=ttl) if ttl > 0 else None,
    )
    db.add(exchange)

    others = decline_pending_for_post(
        db, request.post_id, actor_id, "post_matched",
        "The post you requested was matched with someone else.",
        exclude_id=request.id,
    )

    chat_service.post_system_message(
        db, request.id, "Match confirmed! Agree on a safe public meetup spot to make the exchange."
    )
    notify(
        db, request.requester_id, "match_confirmed",
        "Match Confirmed!",
        "Your exchange request has been accepted. You can now chat with your match.",
        {"matchId": request.id},
    )
    audit.record(db, "match_request", request.id, "accepted", actor_id,
                 {"status": "pending"}, {"status": "accepted"})

    try:
        with transient_errors(db):
            db.commit()
    except IntegrityError:
        db.rollback()
        raise StateConflict("Match request was already accepted")

    db.refresh(exchange)
    broker.publish(post_store.POSTS, "matches", "exchanges")
    logger.info(
        "Match request %s accepted; %d competing request(s) declined", request.id, len(others)
    )
    return exchange


def decline_match_request(db: Session, request_id: str, actor_id: str) -> MatchRequest:
    """Owner declines. The post stays active."""
    request = _locked_request(db, request_id, actor_id)
    _reject_if_expired(db, request)
    if request.status != "pending":
        raise StateConflict(f"Match request is already {request.status}")

    _transition(request, "declined")
    notify(
        db, request.requester_id, "match_declined",
        "Match Declined",
        "Your exchange request was declined.",
        {"matchId": request.id},
    )
    audit.record(db, "match_request", request.id, "declined", actor_id,
                 {"status": "pending"}, {"status": "declined"})
    with transient_errors(db):
        db.commit()
    db.refresh(request)
    broker.publish("matches")
    logger.info("Match request %s declined", request.id)
    return request


@retry_read
def get_match_request(db: Session, request_id: str, user_id: str) -> MatchRequest:
    request = db.query(MatchRequest).filter(MatchRequest.id == request_id).first()
    if not request:
        raise NotFound("Match request not found")
    if user_id not in (request.requester_id, request.owner_id):
        raise NotAuthorized("Not a party to this match request")
    return request


@retry_read
def list_incoming_requests(db: Session, user_id: str, status: Optional[str] = None) -> list[MatchRequest]:
    """Requests against the user's posts."""
    query = db.query(MatchRequest).filter(MatchRequest.owner_id == user_id)
    if status:
        query = query.filter(MatchRequest.status == status)
    return query.order_by(MatchRequest.created_at.desc()).all()


@retry_read
def list_outgoing_requests(db: Session, user_id: str, status: Optional[str] = None) -> list[MatchRequest]:
    """Requests the user has sent."""
    query = db.query(MatchRequest).filter(MatchRequest.requester_id == user_id)
    if status:
        query = query.filter(MatchRequest.status == status)
    return query.order_by(MatchRequest.created_at.desc()).all()
