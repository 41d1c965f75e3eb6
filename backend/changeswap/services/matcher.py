"""Proximity matcher — ranks candidate posts for a user's location.

Pure functions over PostView snapshots. Nothing here touches the store, and
the same snapshot always ranks to the same output.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from changeswap import geohash
from changeswap.config import settings
from changeswap.errors import ValidationError
from changeswap.services.post_store import PostView
from changeswap.timeutils import utcnow, ensure_utc

SORT_KEYS = ("distance", "amount", "rating", "recent")


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float

    def __post_init__(self):
        geohash.validate_coordinates(self.lat, self.lng)


@dataclass(frozen=True)
class TradeProfile:
    """What the requester offers and wants, for compatibility checks."""

    give_type: str
    need_type: str
    give_amount: Optional[float] = None
    need_amount: Optional[float] = None


@dataclass(frozen=True)
class RankedPost:
    post: PostView
    distance_km: Optional[float]
    same_cell: bool = False
    score: Optional[float] = None


@dataclass(frozen=True)
class SearchFilters:
    radius_km: Optional[float] = None
    give_type: Optional[str] = None
    need_type: Optional[str] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    min_rating: Optional[float] = None
    text: Optional[str] = None
    compatible_with: Optional[TradeProfile] = None


def is_compatible(post: PostView, profile: TradeProfile) -> bool:
    """A post complements the profile when each side's need is the other's give."""
    return post.need_type == profile.give_type and post.give_type == profile.need_type


def _candidates(posts: Iterable[PostView], requester_id: Optional[str]) -> list[PostView]:
    """Active posts not owned by the requester, one per id (latest update wins)."""
    latest: dict[str, PostView] = {}
    for post in posts:
        if post.status != "active" or post.user_id == requester_id:
            continue
        seen = latest.get(post.id)
        if seen is None or post.updated_at > seen.updated_at:
            latest[post.id] = post
    return list(latest.values())


def _rank(posts: list[PostView], origin: Optional[Location]) -> list[RankedPost]:
    cell = geohash.encode(origin.lat, origin.lng, settings.GEOHASH_PRECISION) if origin else None
    ranked = []
    for post in posts:
        if origin:
            dist = geohash.distance(origin.lat, origin.lng, post.lat, post.lng)
            same_cell = post.geohash.startswith(cell)
        else:
            dist, same_cell = None, False
        ranked.append(RankedPost(post=post, distance_km=dist, same_cell=same_cell))

    # Secondary keys first; sorts are stable. id makes equal timestamps deterministic.
    ranked.sort(key=lambda r: r.post.id)
    ranked.sort(key=lambda r: ensure_utc(r.post.created_at), reverse=True)
    if origin:
        ranked.sort(key=lambda r: r.distance_km)
    return ranked


def rank_feed(
    posts: Iterable[PostView],
    origin: Optional[Location],
    requester_id: Optional[str],
) -> list[RankedPost]:
    """Default feed: every known active post, nearest first, newest on ties.

    No radius is applied. Without a location, proximity is disabled and the
    feed is ordered by recency alone.
    """
    return _rank(_candidates(posts, requester_id), origin)


def search(
    posts: Iterable[PostView],
    origin: Optional[Location],
    requester_id: Optional[str],
    filters: Optional[SearchFilters] = None,
    sort_by: str = "distance",
) -> list[RankedPost]:
    """Search mode: explicit radius plus optional type/amount/rating/text filters."""
    if sort_by not in SORT_KEYS:
        raise ValidationError(f"sort_by must be one of {', '.join(SORT_KEYS)}")
    filters = filters or SearchFilters()
    radius = filters.radius_km if filters.radius_km is not None else settings.DEFAULT_SEARCH_RADIUS_KM
    if radius <= 0:
        raise ValidationError("radius_km must be positive")

    ranked = _rank(_candidates(posts, requester_id), origin)
    text = filters.text.lower() if filters.text else None

    def keep(r: RankedPost) -> bool:
        p = r.post
        if origin and r.distance_km > radius:
            return False
        if filters.give_type and p.give_type != filters.give_type:
            return False
        if filters.need_type and p.need_type != filters.need_type:
            return False
        if filters.min_amount is not None and p.give_amount < filters.min_amount:
            return False
        if filters.max_amount is not None and p.give_amount > filters.max_amount:
            return False
        if filters.min_rating is not None and p.owner_rating < filters.min_rating:
            return False
        if text and text not in (p.owner_name or "").lower() and text not in (p.notes or "").lower():
            return False
        if filters.compatible_with and not is_compatible(p, filters.compatible_with):
            return False
        return True

    result = [r for r in ranked if keep(r)]
    if sort_by == "amount":
        result.sort(key=lambda r: r.post.give_amount, reverse=True)
    elif sort_by == "rating":
        result.sort(key=lambda r: r.post.owner_rating, reverse=True)
    elif sort_by == "recent":
        result.sort(key=lambda r: ensure_utc(r.post.created_at), reverse=True)
    return result


def match_score(distance_km: float, owner_rating: float, created_at: datetime, now: Optional[datetime] = None) -> float:
    """Closer, better-rated and fresher posts score higher."""
    now = now or utcnow()
    hours_since_post = (ensure_utc(now) - ensure_utc(created_at)).total_seconds() / 3600
    score = max(0.0, 100 - distance_km * 20)
    score += (owner_rating or 0.0) * 10
    score += max(0.0, 20 - hours_since_post)
    return score


def find_reciprocal_matches(
    user_post: PostView,
    posts: Iterable[PostView],
    origin: Location,
    max_distance_km: float = 5.0,
    now: Optional[datetime] = None,
) -> list[RankedPost]:
    """Posts that exactly mirror ``user_post`` within ``max_distance_km``, best score first."""
    now = now or utcnow()
    matches = []
    for r in _rank(_candidates(posts, user_post.user_id), origin):
        p = r.post
        reciprocal = (
            p.give_amount == user_post.need_amount
            and p.give_type == user_post.need_type
            and p.need_amount == user_post.give_amount
            and p.need_type == user_post.give_type
        )
        if not reciprocal or r.distance_km > max_distance_km:
            continue
        score = match_score(r.distance_km, p.owner_rating, p.created_at, now)
        matches.append(RankedPost(post=p, distance_km=r.distance_km, same_cell=r.same_cell, score=score))
    matches.sort(key=lambda r: r.score, reverse=True)
    return matches
