from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from bookswap.models.trade import TradeStatus
from bookswap.schemas.book import BookSummary


class TradeRole(str, Enum):
    INITIATED = "initiated"
    RECEIVED = "received"


class TradeCreate(BaseModel):
    book_offered: int = Field(
        ..., gt=0, validation_alias=AliasChoices("book_offered", "bookOffered")
    )
    book_requested: int = Field(
        ..., gt=0, validation_alias=AliasChoices("book_requested", "bookRequested")
    )
    message: str | None = Field(default=None, max_length=2000)

    @field_validator("message")
    @classmethod
    def strip_message(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class TradeStatusUpdate(BaseModel):
    status: TradeStatus

    @field_validator("status")
    @classmethod
    def validate_requested_status(cls, v: TradeStatus) -> TradeStatus:
        if v not in (TradeStatus.ACCEPTED, TradeStatus.REJECTED, TradeStatus.CANCELLED):
            raise ValueError("Status must be one of: accepted, rejected, cancelled")
        return v


class ParticipantInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    display_name: str
    avatar_url: str | None = None


class TradeView(BaseModel):
    """Trade as seen by a participant.

    Ids are always present; the populated projections are filled in by the
    service when the referenced rows could be resolved.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    status: TradeStatus
    message: str | None = None
    is_seen: bool

    initiator_id: int
    receiver_id: int
    book_offered_id: int
    book_requested_id: int

    initiator: ParticipantInfo | None = None
    receiver: ParticipantInfo | None = None
    book_offered: BookSummary | None = None
    book_requested: BookSummary | None = None

    created_at: datetime
    updated_at: datetime
    accepted_at: datetime | None = None
    completed_at: datetime | None = None

    can_accept: bool = False
    can_reject: bool = False
    can_cancel: bool = False
    can_complete: bool = False


class TradeCompleteResponse(BaseModel):
    message: str
    trade_id: int
    status: TradeStatus = TradeStatus.COMPLETED


class MarkSeenResponse(BaseModel):
    message: str
    updated_count: int


class UnseenCountResponse(BaseModel):
    count: int
