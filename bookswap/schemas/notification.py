from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    TRADE_REQUEST = "trade_request"
    TRADE_ACCEPTED = "trade_accepted"
    TRADE_REJECTED = "trade_rejected"
    TRADE_COMPLETED = "trade_completed"
    SYSTEM = "system"


class NotificationEvent(BaseModel):
    """Ephemeral domain event produced by a trade transition; consumed once."""

    type: NotificationType
    target_user_id: int
    message: str
    related_trade_id: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WirePayload(BaseModel):
    message: str
    tradeId: str | None = None
    timestamp: str


class WireMessage(BaseModel):
    type: NotificationType
    payload: WirePayload


class HandshakeMessage(BaseModel):
    token: str = Field(..., min_length=1)
