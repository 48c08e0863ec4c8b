from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .types import UTCDateTime, utcnow


class TradeStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (TradeStatus.PENDING, TradeStatus.ACCEPTED)

ALLOWED_TRANSITIONS: dict[TradeStatus, frozenset[TradeStatus]] = {
    TradeStatus.PENDING: frozenset(
        {TradeStatus.ACCEPTED, TradeStatus.REJECTED, TradeStatus.CANCELLED}
    ),
    TradeStatus.ACCEPTED: frozenset({TradeStatus.COMPLETED}),
    TradeStatus.COMPLETED: frozenset(),
    TradeStatus.REJECTED: frozenset(),
    TradeStatus.CANCELLED: frozenset(),
}


class Trade(Base):
    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    initiator_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    receiver_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    book_offered_id: Mapped[int] = mapped_column(
        ForeignKey("books.id", ondelete="RESTRICT"), nullable=False
    )
    book_requested_id: Mapped[int] = mapped_column(
        ForeignKey("books.id", ondelete="RESTRICT"), nullable=False
    )

    status: Mapped[TradeStatus] = mapped_column(
        SQLEnum(
            TradeStatus,
            native_enum=False,
            length=20,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=TradeStatus.PENDING,
    )
    message: Mapped[str | None] = mapped_column(Text)
    # Receiver-scoped unread flag.
    is_seen: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("idx_trade_initiator", "initiator_id", "status"),
        Index("idx_trade_receiver", "receiver_id", "status"),
        Index("idx_trade_book_offered", "book_offered_id", "status"),
        Index("idx_trade_book_requested", "book_requested_id", "status"),
    )

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.initiator_id, self.receiver_id)

    def can_transition_to(self, new_status: TradeStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]
