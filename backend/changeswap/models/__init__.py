"""SQLAlchemy ORM models."""

from changeswap.models.user import User
from changeswap.models.exchange_post import ExchangePost
from changeswap.models.match_request import MatchRequest
from changeswap.models.active_exchange import ActiveExchange, PartyRecord
from changeswap.models.exchange_history import ExchangeHistoryRecord
from changeswap.models.user_rating import UserRating
from changeswap.models.chat_message import ChatMessage
from changeswap.models.notification import Notification
from changeswap.models.audit_log import AuditLog

__all__ = [
    "User",
    "ExchangePost",
    "MatchRequest",
    "ActiveExchange",
    "PartyRecord",
    "ExchangeHistoryRecord",
    "UserRating",
    "ChatMessage",
    "Notification",
    "AuditLog",
]
