"""Exchange post store — CRUD, one-shot queries and snapshot subscriptions for posts."""

import json
import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from changeswap import geohash
from changeswap.config import settings
from changeswap.database import session_scope
from changeswap.errors import ValidationError, NotFound, NotAuthorized, StateConflict
from changeswap.models.exchange_post import ExchangePost, DENOMINATION_TYPES
from changeswap.models.user import User
from changeswap.services.snapshot_broker import broker, SnapshotBroker
from changeswap.services.store_retry import retry_read, transient_errors
from changeswap.timeutils import utcnow, ensure_utc

logger = logging.getLogger(__name__)

POSTS = "posts"
MAX_NOTES_LENGTH = 500
EDITABLE_FIELDS = {
    "give_amount", "give_type", "need_amount", "need_type",
    "need_breakdown", "notes", "lat", "lng",
}


@dataclass(frozen=True)
class PostView:
    """Immutable snapshot of a post as the matcher sees it."""

    id: str
    user_id: str
    give_amount: float
    give_type: str
    need_amount: float
    need_type: str
    lat: float
    lng: float
    geohash: str
    status: str
    created_at: datetime
    updated_at: datetime
    need_breakdown: tuple = ()
    notes: Optional[str] = None
    owner_name: str = ""
    owner_rating: float = 0.0


@dataclass(frozen=True)
class PostFilters:
    exclude_user_id: Optional[str] = None
    prefixes: tuple = ()
    status: str = "active"
    limit: Optional[int] = None


def to_view(post: ExchangePost, owner: Optional[User] = None) -> PostView:
    owner = owner or post.owner
    return PostView(
        id=post.id,
        user_id=post.user_id,
        give_amount=post.give_amount,
        give_type=post.give_type,
        need_amount=post.need_amount,
        need_type=post.need_type,
        lat=post.lat,
        lng=post.lng,
        geohash=post.geohash,
        status=post.status,
        created_at=ensure_utc(post.created_at),
        updated_at=ensure_utc(post.updated_at or post.created_at),
        need_breakdown=tuple(json.loads(post.need_breakdown)) if post.need_breakdown else (),
        notes=post.notes,
        owner_name=owner.display_name if owner else "",
        owner_rating=owner.average_rating if owner else 0.0,
    )


# ── Validation ───────────────────────────────────────────────────────────────

def _validate_amount(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a number")
    if value <= 0:
        raise ValidationError(f"{name} must be positive")
    return float(value)


def _validate_type(name: str, value) -> str:
    if value not in DENOMINATION_TYPES:
        raise ValidationError(f"{name} must be one of {', '.join(DENOMINATION_TYPES)}")
    return value


def _validate_breakdown(breakdown, need_amount: float) -> Optional[str]:
    if not breakdown:
        return None
    values = [_validate_amount("need_breakdown entry", v) for v in breakdown]
    if abs(sum(values) - need_amount) > 1e-6:
        raise ValidationError(
            f"need_breakdown sums to {sum(values):g} but need_amount is {need_amount:g}"
        )
    return json.dumps(values)


def _validate_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    if len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"notes must be at most {MAX_NOTES_LENGTH} characters")
    return notes


# ── Writes ───────────────────────────────────────────────────────────────────

def create_post(
    db: Session,
    user_id: str,
    give_amount: float,
    give_type: str,
    need_amount: float,
    need_type: str,
    lat: float,
    lng: float,
    need_breakdown: Optional[list[float]] = None,
    notes: Optional[str] = None,
) -> ExchangePost:
    """Create an active post tagged with its geohash cell."""
    give_amount = _validate_amount("give_amount", give_amount)
    need_amount = _validate_amount("need_amount", need_amount)
    _validate_type("give_type", give_type)
    _validate_type("need_type", need_type)
    cell = geohash.encode(lat, lng, settings.GEOHASH_PRECISION)

    now = utcnow()
    post = ExchangePost(
        id=str(uuid.uuid4()),
        user_id=user_id,
        give_amount=give_amount,
        give_type=give_type,
        need_amount=need_amount,
        need_type=need_type,
        need_breakdown=_validate_breakdown(need_breakdown, need_amount),
        notes=_validate_notes(notes),
        lat=float(lat),
        lng=float(lng),
        geohash=cell,
        status="active",
        created_at=now,
        updated_at=now,
    )
    with transient_errors(db):
        db.add(post)
        db.commit()
    db.refresh(post)
    broker.publish(POSTS)
    logger.info("Post %s created by %s in cell %s", post.id, user_id, cell)
    return post


def _owned_post(db: Session, post_id: str, actor_id: str) -> ExchangePost:
    post = db.query(ExchangePost).filter(ExchangePost.id == post_id).first()
    if not post:
        raise NotFound("Post not found")
    if post.user_id != actor_id:
        raise NotAuthorized("Only the post owner can change this post")
    return post


def update_post(db: Session, post_id: str, actor_id: str, patch: dict) -> ExchangePost:
    """Owner edit of an active post. Location changes re-tag the geohash."""
    unknown = set(patch) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

    post = _owned_post(db, post_id, actor_id)
    if post.status != "active":
        raise StateConflict(f"Cannot edit a post in status '{post.status}'")

    give_amount = _validate_amount("give_amount", patch.get("give_amount", post.give_amount))
    need_amount = _validate_amount("need_amount", patch.get("need_amount", post.need_amount))
    give_type = _validate_type("give_type", patch.get("give_type", post.give_type))
    need_type = _validate_type("need_type", patch.get("need_type", post.need_type))
    lat = patch.get("lat", post.lat)
    lng = patch.get("lng", post.lng)
    cell = geohash.encode(lat, lng, settings.GEOHASH_PRECISION)

    if "need_breakdown" in patch:
        breakdown = _validate_breakdown(patch["need_breakdown"], need_amount)
    elif post.need_breakdown and "need_amount" in patch:
        breakdown = _validate_breakdown(json.loads(post.need_breakdown), need_amount)
    else:
        breakdown = post.need_breakdown

    post.give_amount = give_amount
    post.need_amount = need_amount
    post.give_type = give_type
    post.need_type = need_type
    post.need_breakdown = breakdown
    if "notes" in patch:
        post.notes = _validate_notes(patch["notes"])
    post.lat = float(lat)
    post.lng = float(lng)
    post.geohash = cell
    post.updated_at = utcnow()

    with transient_errors(db):
        db.commit()
    db.refresh(post)
    broker.publish(POSTS)
    return post


def withdraw_post(db: Session, post_id: str, actor_id: str) -> ExchangePost:
    """Soft-delete a post (status=closed) and decline requests still waiting on it."""
    # match_service imports this module
    from changeswap.services.match_service import decline_pending_for_post

    post = _owned_post(db, post_id, actor_id)
    if post.status == "closed":
        return post
    if post.status == "matched":
        raise StateConflict("Post is part of an active exchange and cannot be withdrawn")

    post.status = "closed"
    post.updated_at = utcnow()
    declined = decline_pending_for_post(
        db, post_id, actor_id, "post_withdrawn", "The post you requested was withdrawn by its owner.",
    )
    with transient_errors(db):
        db.commit()
    db.refresh(post)
    broker.publish(POSTS, "matches")
    logger.info("Post %s withdrawn by owner, %d pending request(s) declined", post_id, len(declined))
    return post


def compare_and_set_status(db: Session, post_id: str, expected: str, new: str) -> bool:
    """Flip a post's status only if it is still ``expected``. Does not commit."""
    changed = (
        db.query(ExchangePost)
        .filter(ExchangePost.id == post_id, ExchangePost.status == expected)
        .update({"status": new, "updated_at": utcnow()}, synchronize_session=False)
    )
    return changed == 1


# ── Reads ────────────────────────────────────────────────────────────────────

@retry_read
def get_post(db: Session, post_id: str) -> ExchangePost:
    post = db.query(ExchangePost).filter(ExchangePost.id == post_id).first()
    if not post:
        raise NotFound("Post not found")
    return post


@retry_read
def list_user_posts(db: Session, user_id: str, status: Optional[str] = None) -> list[ExchangePost]:
    query = db.query(ExchangePost).filter(ExchangePost.user_id == user_id)
    if status:
        query = query.filter(ExchangePost.status == status)
    return query.order_by(ExchangePost.created_at.desc()).all()


@retry_read
def list_active_posts(
    db: Session,
    exclude_user_id: Optional[str] = None,
    prefixes: Optional[list[str]] = None,
    limit: Optional[int] = None,
) -> list[ExchangePost]:
    """One-shot query of active posts, optionally narrowed to geohash prefixes."""
    return _query_posts(db, PostFilters(
        exclude_user_id=exclude_user_id,
        prefixes=tuple(prefixes or ()),
        limit=limit,
    ))


def _query_posts(db: Session, filters: PostFilters) -> list[ExchangePost]:
    query = db.query(ExchangePost).filter(ExchangePost.status == filters.status)
    if filters.exclude_user_id:
        query = query.filter(ExchangePost.user_id != filters.exclude_user_id)
    if filters.prefixes:
        query = query.filter(or_(*[ExchangePost.geohash.like(f"{p}%") for p in filters.prefixes]))
    query = query.order_by(ExchangePost.created_at.desc())
    if filters.limit:
        query = query.limit(filters.limit)
    return query.all()


@retry_read
def snapshot(db: Session, filters: PostFilters) -> tuple[PostView, ...]:
    """Current post set for ``filters`` as immutable views."""
    posts = _query_posts(db, filters)
    owner_ids = {p.user_id for p in posts}
    owners = {}
    if owner_ids:
        owners = {u.id: u for u in db.query(User).filter(User.id.in_(owner_ids)).all()}
    return tuple(to_view(p, owners.get(p.user_id)) for p in posts)


# ── Subscriptions ────────────────────────────────────────────────────────────

class PostSubscription:
    """Stream of post-set snapshots for one filter.

    The first call returns the current snapshot; later calls block until the
    posts collection changes and the re-queried snapshot differs from the last
    one delivered. Duplicate notifications therefore never yield duplicates.
    """

    def __init__(
        self,
        filters: PostFilters,
        session_factory: Callable[[], Session],
        change_broker: SnapshotBroker = broker,
    ):
        self.filters = filters
        self._session_factory = session_factory
        self._broker = change_broker
        self._seen_version: Optional[int] = None
        self._last: Optional[tuple[PostView, ...]] = None
        self._closed = False

    def _load(self) -> tuple[PostView, ...]:
        with session_scope(self._session_factory) as db:
            return snapshot(db, self.filters)

    def next_snapshot(self, timeout: Optional[float] = None) -> Optional[tuple[PostView, ...]]:
        """Next distinct snapshot, or None if nothing new arrived within ``timeout``."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._closed:
            if self._seen_version is None:
                version = self._broker.version(POSTS)
            else:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                version = self._broker.wait_for_change(POSTS, self._seen_version, remaining)
                if version is None:
                    return None
            self._seen_version = version
            current = self._load()
            if current != self._last:
                self._last = current
                return current
        return None

    def close(self) -> None:
        self._closed = True

    def __iter__(self) -> Iterator[tuple[PostView, ...]]:
        while not self._closed:
            current = self.next_snapshot()
            if current is not None:
                yield current


def subscribe(
    filters: PostFilters,
    session_factory: Callable[[], Session],
    change_broker: SnapshotBroker = broker,
) -> PostSubscription:
    return PostSubscription(filters, session_factory, change_broker)
