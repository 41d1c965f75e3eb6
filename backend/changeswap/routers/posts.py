"""Posts router — offers, the proximity feed, search and the live feed stream."""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from changeswap import geohash
from changeswap.config import settings
from changeswap.database import get_db, SessionLocal
from changeswap.errors import ValidationError
from changeswap.middleware.auth import get_current_user
from changeswap.middleware.rate_limit import limiter
from changeswap.models.user import User
from changeswap.schemas.post import (
    PostCreate,
    PostUpdate,
    PostResponse,
    RankedPostResponse,
    FeedResponse,
    SearchParams,
)
from changeswap.services import matcher, post_store
from changeswap.services.matcher import Location, SearchFilters, TradeProfile
from changeswap.services.post_store import PostFilters, PostView, to_view
from changeswap.timeutils import isoformat

router = APIRouter(prefix="/api/posts", tags=["posts"])

STREAM_KEEPALIVE_SECONDS = 15.0


def _view_to_response(view: PostView) -> PostResponse:
    return PostResponse(
        id=view.id,
        user_id=view.user_id,
        give_amount=view.give_amount,
        give_type=view.give_type,
        need_amount=view.need_amount,
        need_type=view.need_type,
        need_breakdown=list(view.need_breakdown),
        notes=view.notes,
        lat=view.lat,
        lng=view.lng,
        geohash=view.geohash,
        status=view.status,
        owner_name=view.owner_name,
        owner_rating=view.owner_rating,
        created_at=isoformat(view.created_at),
        updated_at=isoformat(view.updated_at),
    )


def _origin(lat: Optional[float], lng: Optional[float]) -> Optional[Location]:
    """No location (or half of one) disables proximity."""
    if lat is None or lng is None:
        return None
    return Location(lat, lng)


def _feed_response(origin: Optional[Location], ranked: list) -> FeedResponse:
    """The ranked list is cut to MAX_FEED_SIZE here, never before ranking."""
    return FeedResponse(
        origin_geohash=geohash.encode(origin.lat, origin.lng, settings.GEOHASH_PRECISION) if origin else None,
        total=len(ranked),
        results=[
            RankedPostResponse(
                post=_view_to_response(r.post),
                distance_km=r.distance_km,
                same_cell=r.same_cell,
                score=r.score,
            )
            for r in ranked[: settings.MAX_FEED_SIZE]
        ],
    )


@router.post("", response_model=PostResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT_WRITES)
def create_post(
    request: Request,
    req: PostCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Publish a new exchange offer."""
    post = post_store.create_post(
        db,
        user_id=current_user.id,
        give_amount=req.give_amount,
        give_type=req.give_type,
        need_amount=req.need_amount,
        need_type=req.need_type,
        lat=req.lat,
        lng=req.lng,
        need_breakdown=req.need_breakdown,
        notes=req.notes,
    )
    return _view_to_response(to_view(post))


@router.get("/my", response_model=list[PostResponse])
def my_posts(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """The current user's posts, newest first."""
    posts = post_store.list_user_posts(db, current_user.id, status)
    return [_view_to_response(to_view(p)) for p in posts]


@router.get("/feed", response_model=FeedResponse)
def feed(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Every active post from other users, nearest first."""
    origin = _origin(lat, lng)
    posts = post_store.snapshot(db, PostFilters(exclude_user_id=current_user.id))
    return _feed_response(origin, matcher.rank_feed(posts, origin, current_user.id))


@router.get("/search", response_model=FeedResponse)
def search_posts(
    params: SearchParams = Depends(),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Radius search with optional filters and a selectable sort key."""
    origin = _origin(params.lat, params.lng)
    radius = params.radius_km if params.radius_km is not None else settings.DEFAULT_SEARCH_RADIUS_KM

    prefixes: tuple = ()
    if origin:
        prefixes = tuple(geohash.covering_prefixes(
            origin.lat, origin.lng, radius, settings.GEOHASH_PRECISION
        ))

    profile = None
    if params.compatible_only:
        own = post_store.list_user_posts(db, current_user.id, "active")
        if not own:
            raise ValidationError("Create an offer first to filter by compatibility")
        latest = own[0]
        profile = TradeProfile(
            give_type=latest.give_type,
            need_type=latest.need_type,
            give_amount=latest.give_amount,
            need_amount=latest.need_amount,
        )

    posts = post_store.snapshot(db, PostFilters(exclude_user_id=current_user.id, prefixes=prefixes))
    filters = SearchFilters(
        radius_km=radius,
        give_type=params.give_type,
        need_type=params.need_type,
        min_amount=params.min_amount,
        max_amount=params.max_amount,
        min_rating=params.min_rating,
        text=params.text,
        compatible_with=profile,
    )
    ranked = matcher.search(posts, origin, current_user.id, filters, params.sort_by)
    return _feed_response(origin, ranked)


@router.get("/matches/{post_id}", response_model=FeedResponse)
def reciprocal_matches(
    post_id: str,
    lat: float,
    lng: float,
    max_distance_km: float = Query(default=5.0, gt=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Posts that exactly mirror one of the user's own offers, best first."""
    origin = Location(lat, lng)
    own = post_store.get_post(db, post_id)
    if own.user_id != current_user.id:
        raise ValidationError("You can only look up matches for your own post")
    posts = post_store.snapshot(db, PostFilters(exclude_user_id=current_user.id))
    ranked = matcher.find_reciprocal_matches(to_view(own), posts, origin, max_distance_km)
    return _feed_response(origin, ranked)


@router.get("/stream")
async def stream_feed(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    current_user: User = Depends(get_current_user),
):
    """Server-Sent Events: a ranked feed every time the post set changes."""
    origin = _origin(lat, lng)
    user_id = current_user.id
    subscription = post_store.subscribe(PostFilters(exclude_user_id=user_id), SessionLocal)

    async def events():
        try:
            while True:
                snap = await asyncio.to_thread(subscription.next_snapshot, STREAM_KEEPALIVE_SECONDS)
                if snap is None:
                    yield ": keep-alive\n\n"
                    continue
                payload = _feed_response(origin, matcher.rank_feed(snap, origin, user_id))
                yield f"event: feed\ndata: {payload.model_dump_json()}\n\n"
        finally:
            subscription.close()

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/{post_id}", response_model=PostResponse)
def get_post(
    post_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _view_to_response(to_view(post_store.get_post(db, post_id)))


@router.patch("/{post_id}", response_model=PostResponse)
def update_post(
    post_id: str,
    req: PostUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Edit an active post (owner only)."""
    patch = req.model_dump(exclude_unset=True)
    post = post_store.update_post(db, post_id, current_user.id, patch)
    return _view_to_response(to_view(post))


@router.delete("/{post_id}", response_model=PostResponse)
def withdraw_post(
    post_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Withdraw a post (soft delete)."""
    post = post_store.withdraw_post(db, post_id, current_user.id)
    return _view_to_response(to_view(post))
