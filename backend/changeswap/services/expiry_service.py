"""Expiry sweep — retires pending requests and active exchanges past their TTL."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from changeswap.models.active_exchange import ActiveExchange
from changeswap.models.match_request import MatchRequest
from changeswap.services import exchange_service, match_service
from changeswap.services.snapshot_broker import broker
from changeswap.services.store_retry import transient_errors
from changeswap.timeutils import utcnow

logger = logging.getLogger(__name__)


def expire_stale_requests(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    stale = (
        db.query(MatchRequest)
        .filter(
            MatchRequest.status == "pending",
            MatchRequest.expires_at.isnot(None),
            MatchRequest.expires_at <= now,
        )
        .with_for_update()
        .all()
    )
    for request in stale:
        match_service.expire_request(db, request)
    if stale:
        with transient_errors(db):
            db.commit()
        broker.publish("matches")
        logger.info("Expired %d stale match request(s)", len(stale))
    return len(stale)


def expire_stale_exchanges(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    stale = (
        db.query(ActiveExchange)
        .filter(ActiveExchange.expires_at.isnot(None), ActiveExchange.expires_at <= now)
        .with_for_update()
        .all()
    )
    for exchange in stale:
        exchange_service.retire_exchange(db, exchange)
    if stale:
        with transient_errors(db):
            db.commit()
        broker.publish("exchanges", "posts", "matches")
        logger.info("Retired %d stale active exchange(s)", len(stale))
    return len(stale)


def run_sweep(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    return {
        "expired_requests": expire_stale_requests(db, now),
        "retired_exchanges": expire_stale_exchanges(db, now),
    }
