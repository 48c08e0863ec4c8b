import logging
from collections.abc import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from bookswap.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidTradeError,
    NotFoundError,
    TradeServiceError,
)
from bookswap.core.locks import EntityLocks, book_key, trade_key
from bookswap.core.logging import TradeAuditLogger
from bookswap.models.book import Book
from bookswap.models.trade import ACTIVE_STATUSES, Trade, TradeStatus
from bookswap.models.types import utcnow
from bookswap.models.user import User
from bookswap.schemas.book import BookSummary
from bookswap.schemas.notification import NotificationEvent, NotificationType
from bookswap.schemas.trade import ParticipantInfo, TradeRole, TradeView
from bookswap.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

STATUS_UPDATES = (TradeStatus.ACCEPTED, TradeStatus.REJECTED, TradeStatus.CANCELLED)


class TradeService:
    """Trade lifecycle: pending -> accepted -> completed, pending -> rejected | cancelled.

    Each transition runs under the trade's lock (and its books' locks when
    availability or ownership changes), re-reads current rows, validates, and
    commits as one unit of work. Notifications go out after the commit and
    never affect the outcome.
    """

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NotificationDispatcher | None,
        locks: EntityLocks,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.locks = locks

    async def create_trade(
        self,
        initiator_id: int,
        book_offered_id: int,
        book_requested_id: int,
        message: str | None = None,
    ) -> TradeView:
        if book_offered_id == book_requested_id:
            raise InvalidTradeError("Offered and requested book must differ")

        async with self.locks.hold_many([book_key(book_offered_id), book_key(book_requested_id)]):
            books = await self._get_books_for_update([book_offered_id, book_requested_id])

            requested = books.get(book_requested_id)
            if not requested:
                raise NotFoundError("Requested book not found")
            offered = books.get(book_offered_id)
            if not offered:
                raise NotFoundError("Offered book not found")

            if offered.owner_id != initiator_id:
                raise AuthorizationError("You can only offer books you own")
            if requested.owner_id == initiator_id:
                raise InvalidTradeError("Cannot trade with yourself")
            if not offered.is_available or not requested.is_available:
                raise ConflictError("One or both books are not available for trade")

            if await self._get_open_duplicate(initiator_id, book_offered_id, book_requested_id):
                raise ConflictError("An active trade for these books already exists")

            now = utcnow()
            trade = Trade(
                initiator_id=initiator_id,
                receiver_id=requested.owner_id,
                book_offered_id=book_offered_id,
                book_requested_id=book_requested_id,
                status=TradeStatus.PENDING,
                message=message,
                is_seen=False,
                created_at=now,
                updated_at=now,
            )
            self.db.add(trade)
            await self._commit()

        TradeAuditLogger.log_transition(
            trade.id, initiator_id, None, TradeStatus.PENDING.value,
            {"book_offered_id": book_offered_id, "book_requested_id": book_requested_id},
        )

        users = await self._get_users([initiator_id])
        await self._notify(
            [
                NotificationEvent(
                    type=NotificationType.TRADE_REQUEST,
                    target_user_id=trade.receiver_id,
                    message=(
                        f"{self._display_name(users, initiator_id)} wants to trade "
                        f"'{offered.title}' for your '{requested.title}'"
                    ),
                    related_trade_id=trade.id,
                )
            ]
        )

        return await self._build_trade_view(trade, initiator_id)

    async def update_status(
        self, trade_id: int, actor_id: int, new_status: TradeStatus | str
    ) -> TradeView:
        try:
            new_status = TradeStatus(new_status)
        except ValueError:
            raise InvalidTradeError(f"Unknown trade status: {new_status}")

        if new_status not in STATUS_UPDATES:
            raise InvalidTradeError("Status must be one of: accepted, rejected, cancelled")

        superseded: list[Trade] = []
        async with self.locks.hold(trade_key(trade_id)):
            trade = await self._get_trade_for_update(trade_id)

            try:
                self._check_status_update(trade, actor_id, new_status)

                if new_status == TradeStatus.ACCEPTED:
                    async with self.locks.hold_many(self._book_keys(trade)):
                        await self._reserve_books(trade)
                        superseded = await self._reject_competing(trade)
                        self._apply_status(trade, new_status)
                        await self._commit()
                else:
                    self._apply_status(trade, new_status)
                    await self._commit()
            except TradeServiceError as e:
                TradeAuditLogger.log_rejected_transition(trade_id, actor_id, new_status.value, e.message)
                raise

        TradeAuditLogger.log_transition(trade.id, actor_id, TradeStatus.PENDING.value, new_status.value)
        for other in superseded:
            TradeAuditLogger.log_transition(
                other.id, actor_id, TradeStatus.PENDING.value, TradeStatus.REJECTED.value,
                {"superseded_by": trade.id},
            )

        events = await self._status_events(trade, new_status)
        events.extend(await self._superseded_events(superseded, actor_id))
        await self._notify(events)
        return await self._build_trade_view(trade, actor_id)

    async def complete_trade(self, trade_id: int, actor_id: int) -> TradeView:
        async with self.locks.hold(trade_key(trade_id)):
            trade = await self._get_trade_for_update(trade_id)

            try:
                if not trade.is_participant(actor_id):
                    raise AuthorizationError("Not authorized to complete this trade")
                if not trade.can_transition_to(TradeStatus.COMPLETED):
                    raise ConflictError("Trade must be accepted before completion")

                async with self.locks.hold_many(self._book_keys(trade)):
                    books = await self._get_books_for_update(
                        [trade.book_offered_id, trade.book_requested_id]
                    )
                    offered = books.get(trade.book_offered_id)
                    requested = books.get(trade.book_requested_id)
                    if not offered or not requested:
                        raise ConflictError("One or both traded books no longer exist")

                    now = utcnow()
                    offered.owner_id = trade.receiver_id
                    requested.owner_id = trade.initiator_id
                    for book in (offered, requested):
                        book.is_available = True
                        book.updated_at = now

                    trade.status = TradeStatus.COMPLETED
                    trade.completed_at = now
                    trade.updated_at = now
                    await self._commit()
            except TradeServiceError as e:
                TradeAuditLogger.log_rejected_transition(trade_id, actor_id, TradeStatus.COMPLETED.value, e.message)
                raise

        TradeAuditLogger.log_transition(
            trade.id, actor_id, TradeStatus.ACCEPTED.value, TradeStatus.COMPLETED.value,
            {"new_owner_of_offered": trade.receiver_id, "new_owner_of_requested": trade.initiator_id},
        )

        message = f"Trade completed: '{offered.title}' and '{requested.title}' have changed hands"
        await self._notify(
            [
                NotificationEvent(
                    type=NotificationType.TRADE_COMPLETED,
                    target_user_id=user_id,
                    message=message,
                    related_trade_id=trade.id,
                )
                for user_id in (trade.initiator_id, trade.receiver_id)
            ]
        )

        return await self._build_trade_view(trade, actor_id)

    async def mark_seen(self, user_id: int) -> int:
        result = await self.db.execute(
            update(Trade)
            .where(
                Trade.receiver_id == user_id,
                Trade.status == TradeStatus.PENDING,
                Trade.is_seen == False,  # noqa: E712
            )
            .values(is_seen=True)
            .execution_options(synchronize_session="evaluate")
        )
        await self.db.commit()

        updated_count = result.rowcount or 0
        logger.info(f"Marked {updated_count} received trade(s) as seen for user {user_id}")
        return updated_count

    async def get_trade(self, trade_id: int, user_id: int) -> TradeView:
        trade = await self.db.get(Trade, trade_id)
        if not trade:
            raise NotFoundError("Trade not found")
        if not trade.is_participant(user_id):
            raise AuthorizationError("Not a participant in this trade")

        return await self._build_trade_view(trade, user_id)

    async def list_user_trades(
        self,
        user_id: int,
        status_filter: TradeStatus | None = None,
        role: TradeRole | None = None,
        limit: int = 50,
    ) -> list[TradeView]:
        if role == TradeRole.INITIATED:
            query = select(Trade).where(Trade.initiator_id == user_id)
        elif role == TradeRole.RECEIVED:
            query = select(Trade).where(Trade.receiver_id == user_id)
        else:
            query = select(Trade).where(
                (Trade.initiator_id == user_id) | (Trade.receiver_id == user_id)
            )

        if status_filter:
            query = query.where(Trade.status == status_filter)

        query = query.order_by(Trade.created_at.desc(), Trade.id.desc()).limit(limit)
        result = await self.db.execute(query)

        return await self._build_trade_views(result.scalars().all(), user_id)

    async def unseen_count(self, user_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Trade.id)).where(
                Trade.receiver_id == user_id,
                Trade.status == TradeStatus.PENDING,
                Trade.is_seen.is_(False),
            )
        )
        return result.scalar_one()

    def _check_status_update(self, trade: Trade, actor_id: int, new_status: TradeStatus) -> None:
        if new_status == TradeStatus.CANCELLED:
            if actor_id != trade.initiator_id:
                raise AuthorizationError("Only the initiator can cancel this trade")
        elif actor_id != trade.receiver_id:
            raise AuthorizationError("Not authorized to update this trade")

        if not trade.can_transition_to(new_status):
            raise ConflictError(
                f"Trade is {trade.status.value} and cannot be {new_status.value}"
            )

    def _apply_status(self, trade: Trade, new_status: TradeStatus) -> None:
        now = utcnow()
        trade.status = new_status
        trade.is_seen = True
        trade.updated_at = now
        if new_status == TradeStatus.ACCEPTED:
            trade.accepted_at = now

    async def _reserve_books(self, trade: Trade) -> None:
        # Creation-time checks are stale by now; another trade may have won either book.
        books = await self._get_books_for_update([trade.book_offered_id, trade.book_requested_id])
        offered = books.get(trade.book_offered_id)
        requested = books.get(trade.book_requested_id)

        if not offered or not requested:
            raise ConflictError("One or both books no longer exist")
        if not offered.is_available or not requested.is_available:
            raise ConflictError("One or both books are no longer available")
        if offered.owner_id != trade.initiator_id or requested.owner_id != trade.receiver_id:
            raise ConflictError("Book ownership changed since the trade was proposed")

        now = utcnow()
        for book in (offered, requested):
            book.is_available = False
            book.updated_at = now

    async def _reject_competing(self, trade: Trade) -> list[Trade]:
        # A reserved book may back only one active trade.
        book_ids = [trade.book_offered_id, trade.book_requested_id]
        result = await self.db.execute(
            select(Trade)
            .where(
                Trade.id != trade.id,
                Trade.status == TradeStatus.PENDING,
                (Trade.book_offered_id.in_(book_ids)) | (Trade.book_requested_id.in_(book_ids)),
            )
            .order_by(Trade.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        competing = list(result.scalars().all())

        for other in competing:
            self._apply_status(other, TradeStatus.REJECTED)

        return competing

    async def _superseded_events(
        self, superseded: list[Trade], actor_id: int
    ) -> list[NotificationEvent]:
        if not superseded:
            return []

        books = await self._get_books([t.book_requested_id for t in superseded])
        events: list[NotificationEvent] = []
        for other in superseded:
            book = books.get(other.book_requested_id)
            title = book.title if book else "the requested book"
            events.append(
                NotificationEvent(
                    type=NotificationType.TRADE_REJECTED,
                    target_user_id=other.initiator_id,
                    message=f"Your trade offer for '{title}' was closed: a book in it is now reserved by another trade",
                    related_trade_id=other.id,
                )
            )
            if other.receiver_id != actor_id:
                events.append(
                    NotificationEvent(
                        type=NotificationType.SYSTEM,
                        target_user_id=other.receiver_id,
                        message=f"A trade offer for your '{title}' was withdrawn: a book in it is now reserved by another trade",
                        related_trade_id=other.id,
                    )
                )

        return events

    async def _status_events(self, trade: Trade, new_status: TradeStatus) -> list[NotificationEvent]:
        users = await self._get_users([trade.initiator_id, trade.receiver_id])
        books = await self._get_books([trade.book_requested_id])
        requested_title = books[trade.book_requested_id].title if trade.book_requested_id in books else "your book"

        if new_status == TradeStatus.CANCELLED:
            return [
                NotificationEvent(
                    type=NotificationType.SYSTEM,
                    target_user_id=trade.receiver_id,
                    message=(
                        f"{self._display_name(users, trade.initiator_id)} cancelled "
                        f"their trade offer for '{requested_title}'"
                    ),
                    related_trade_id=trade.id,
                )
            ]

        accepted = new_status == TradeStatus.ACCEPTED
        return [
            NotificationEvent(
                type=NotificationType.TRADE_ACCEPTED if accepted else NotificationType.TRADE_REJECTED,
                target_user_id=trade.initiator_id,
                message=(
                    f"{self._display_name(users, trade.receiver_id)} "
                    f"{'accepted' if accepted else 'declined'} your trade offer for '{requested_title}'"
                ),
                related_trade_id=trade.id,
            )
        ]

    async def _notify(self, events: list[NotificationEvent]) -> None:
        if self.dispatcher is None:
            return
        await self.dispatcher.dispatch_all(events)

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConflictError("Trade was modified concurrently, please retry")

    async def _get_trade_for_update(self, trade_id: int) -> Trade:
        result = await self.db.execute(
            select(Trade)
            .where(Trade.id == trade_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        trade = result.scalar_one_or_none()
        if not trade:
            raise NotFoundError("Trade not found")
        return trade

    async def _get_books_for_update(self, book_ids: list[int]) -> dict[int, Book]:
        result = await self.db.execute(
            select(Book)
            .where(Book.id.in_(book_ids))
            .order_by(Book.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {book.id: book for book in result.scalars().all()}

    async def _get_books(self, book_ids: list[int]) -> dict[int, Book]:
        if not book_ids:
            return {}
        result = await self.db.execute(select(Book).where(Book.id.in_(book_ids)))
        return {book.id: book for book in result.scalars().all()}

    async def _get_users(self, user_ids: list[int]) -> dict[int, User]:
        if not user_ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(user_ids)))
        return {user.id: user for user in result.scalars().all()}

    async def _get_open_duplicate(
        self, initiator_id: int, book_offered_id: int, book_requested_id: int
    ) -> Trade | None:
        result = await self.db.execute(
            select(Trade)
            .where(
                Trade.initiator_id == initiator_id,
                Trade.book_offered_id == book_offered_id,
                Trade.book_requested_id == book_requested_id,
                Trade.status.in_(ACTIVE_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _book_keys(trade: Trade):
        return [book_key(trade.book_offered_id), book_key(trade.book_requested_id)]

    @staticmethod
    def _display_name(users: dict[int, User], user_id: int) -> str:
        user = users.get(user_id)
        return user.display_name if user else "Someone"

    async def _build_trade_view(self, trade: Trade, current_user_id: int) -> TradeView:
        views = await self._build_trade_views([trade], current_user_id)
        return views[0]

    async def _build_trade_views(
        self, trades: Sequence[Trade], current_user_id: int
    ) -> list[TradeView]:
        user_ids = {t.initiator_id for t in trades} | {t.receiver_id for t in trades}
        book_ids = {t.book_offered_id for t in trades} | {t.book_requested_id for t in trades}
        users = await self._get_users(list(user_ids))
        books = await self._get_books(list(book_ids))

        def participant(user_id: int) -> ParticipantInfo | None:
            user = users.get(user_id)
            return ParticipantInfo.model_validate(user) if user else None

        def summary(book_id: int) -> BookSummary | None:
            book = books.get(book_id)
            return BookSummary.model_validate(book) if book else None

        views: list[TradeView] = []
        for trade in trades:
            pending = trade.status == TradeStatus.PENDING
            is_receiver = current_user_id == trade.receiver_id

            views.append(
                TradeView(
                    id=trade.id,
                    status=trade.status,
                    message=trade.message,
                    is_seen=trade.is_seen,
                    initiator_id=trade.initiator_id,
                    receiver_id=trade.receiver_id,
                    book_offered_id=trade.book_offered_id,
                    book_requested_id=trade.book_requested_id,
                    initiator=participant(trade.initiator_id),
                    receiver=participant(trade.receiver_id),
                    book_offered=summary(trade.book_offered_id),
                    book_requested=summary(trade.book_requested_id),
                    created_at=trade.created_at,
                    updated_at=trade.updated_at,
                    accepted_at=trade.accepted_at,
                    completed_at=trade.completed_at,
                    can_accept=pending and is_receiver,
                    can_reject=pending and is_receiver,
                    can_cancel=pending and current_user_id == trade.initiator_id,
                    can_complete=trade.status == TradeStatus.ACCEPTED
                    and trade.is_participant(current_user_id),
                )
            )

        return views
