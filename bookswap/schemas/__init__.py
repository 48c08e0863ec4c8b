from .book import BookCreate, BookRead, BookSummary, BookUpdate
from .notification import HandshakeMessage, NotificationEvent, NotificationType, WireMessage
from .trade import (
    MarkSeenResponse,
    ParticipantInfo,
    TradeCompleteResponse,
    TradeCreate,
    TradeRole,
    TradeStatusUpdate,
    TradeView,
    UnseenCountResponse,
)

__all__ = [
    "BookCreate",
    "BookRead",
    "BookSummary",
    "BookUpdate",
    "HandshakeMessage",
    "NotificationEvent",
    "NotificationType",
    "WireMessage",
    "MarkSeenResponse",
    "ParticipantInfo",
    "TradeCompleteResponse",
    "TradeCreate",
    "TradeRole",
    "TradeStatusUpdate",
    "TradeView",
    "UnseenCountResponse",
]
