"""Match requests router — request, accept, decline."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from changeswap.config import settings
from changeswap.database import get_db
from changeswap.middleware.auth import get_current_user
from changeswap.middleware.rate_limit import limiter
from changeswap.models.match_request import MatchRequest
from changeswap.models.user import User
from changeswap.schemas.exchange import ActiveExchangeResponse
from changeswap.schemas.match import MatchRequestCreate, MatchRequestResponse
from changeswap.services import exchange_service, match_service
from changeswap.timeutils import isoformat

router = APIRouter(prefix="/api/matches", tags=["matches"])


def _request_to_response(request: MatchRequest) -> MatchRequestResponse:
    return MatchRequestResponse(
        id=request.id,
        requester_id=request.requester_id,
        owner_id=request.owner_id,
        post_id=request.post_id,
        requester_post_id=request.requester_post_id,
        message=request.message,
        status=request.status,
        created_at=isoformat(request.created_at),
        responded_at=isoformat(request.responded_at),
        expires_at=isoformat(request.expires_at),
    )


def exchange_to_response(view: dict) -> ActiveExchangeResponse:
    return ActiveExchangeResponse(
        **{
            **view,
            "created_at": isoformat(view["created_at"]),
            "expires_at": isoformat(view["expires_at"]),
        }
    )


@router.post("", response_model=MatchRequestResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT_WRITES)
def create_match_request(
    request: Request,
    req: MatchRequestCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Ask the owner of an active post to exchange."""
    match = match_service.create_match_request(
        db, current_user.id, req.post_id, req.requester_post_id, req.message
    )
    return _request_to_response(match)


@router.get("/incoming", response_model=list[MatchRequestResponse])
def incoming_requests(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Requests made against the current user's posts."""
    return [_request_to_response(r) for r in match_service.list_incoming_requests(db, current_user.id, status)]


@router.get("/outgoing", response_model=list[MatchRequestResponse])
def outgoing_requests(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Requests the current user has sent."""
    return [_request_to_response(r) for r in match_service.list_outgoing_requests(db, current_user.id, status)]


@router.get("/{request_id}", response_model=MatchRequestResponse)
def get_match_request(
    request_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _request_to_response(match_service.get_match_request(db, request_id, current_user.id))


@router.post("/{request_id}/accept", response_model=ActiveExchangeResponse)
def accept_match_request(
    request_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Accept a pending request (post owner only). Opens the active exchange."""
    exchange = match_service.accept_match_request(db, request_id, current_user.id)
    partner = db.query(User).filter(User.id == exchange.partner_of(current_user.id)).first()
    return exchange_to_response(exchange_service.exchange_view(exchange, current_user.id, partner))


@router.post("/{request_id}/decline", response_model=MatchRequestResponse)
def decline_match_request(
    request_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Decline a pending request (post owner only)."""
    return _request_to_response(match_service.decline_match_request(db, request_id, current_user.id))
