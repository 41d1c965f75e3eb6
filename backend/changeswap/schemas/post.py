"""Exchange post and feed schemas."""

from typing import Literal, Optional

from pydantic import BaseModel

DenominationType = Literal["bill", "coins"]


class PostCreate(BaseModel):
    give_amount: float
    give_type: DenominationType
    need_amount: float
    need_type: DenominationType
    need_breakdown: Optional[list[float]] = None
    notes: Optional[str] = None
    lat: float
    lng: float


class PostUpdate(BaseModel):
    give_amount: Optional[float] = None
    give_type: Optional[DenominationType] = None
    need_amount: Optional[float] = None
    need_type: Optional[DenominationType] = None
    need_breakdown: Optional[list[float]] = None
    notes: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class PostResponse(BaseModel):
    id: str
    user_id: str
    give_amount: float
    give_type: str
    need_amount: float
    need_type: str
    need_breakdown: list[float] = []
    notes: Optional[str] = None
    lat: float
    lng: float
    geohash: str
    status: str
    owner_name: str = ""
    owner_rating: float = 0.0
    created_at: str
    updated_at: str


class RankedPostResponse(BaseModel):
    post: PostResponse
    distance_km: Optional[float] = None
    same_cell: bool = False
    score: Optional[float] = None


class FeedResponse(BaseModel):
    origin_geohash: Optional[str] = None
    total: int
    results: list[RankedPostResponse]


class SearchParams(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    radius_km: Optional[float] = None
    give_type: Optional[DenominationType] = None
    need_type: Optional[DenominationType] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    min_rating: Optional[float] = None
    text: Optional[str] = None
    compatible_only: bool = False
    sort_by: Literal["distance", "amount", "rating", "recent"] = "distance"
