import asyncio

import pytest
from sqlalchemy import select

from bookswap.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidTradeError,
    NotFoundError,
)
from bookswap.models.book import Book
from bookswap.models.trade import ACTIVE_STATUSES, Trade, TradeStatus
from bookswap.schemas.trade import TradeRole
from bookswap.services.trade_service import TradeService

from .factories import FakeWebSocket, create_book


class TestCreateTrade:

    @pytest.mark.asyncio
    async def test_create_trade_is_pending_and_notifies_receiver(
        self, trade_service, channel_manager, alice, bob, alice_book, bob_book
    ):
        bob_socket = FakeWebSocket()
        channel_manager.register(bob.id, bob_socket)

        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id, "Swap?")

        assert trade.status == TradeStatus.PENDING
        assert trade.initiator_id == alice.id
        assert trade.receiver_id == bob.id
        assert trade.is_seen is False
        assert trade.message == "Swap?"
        assert trade.book_offered.title == "Dune"
        assert trade.receiver.display_name == "Bob"
        assert trade.can_cancel is True
        assert trade.can_accept is False

        requests = bob_socket.messages_of_type("trade_request")
        assert len(requests) == 1
        assert requests[0]["payload"]["tradeId"] == str(trade.id)
        assert "Dune" in requests[0]["payload"]["message"]

    @pytest.mark.asyncio
    async def test_create_trade_leaves_books_available(
        self, trade_service, async_session, alice, alice_book, bob_book
    ):
        await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        await async_session.refresh(alice_book)
        await async_session.refresh(bob_book)
        assert alice_book.is_available is True
        assert bob_book.is_available is True

    @pytest.mark.asyncio
    async def test_create_trade_without_live_connection_succeeds(
        self, trade_service, channel_manager, alice, bob, alice_book, bob_book
    ):
        assert not channel_manager.is_user_connected(bob.id)

        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        assert trade.status == TradeStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_book(self, trade_service, alice, alice_book):
        with pytest.raises(NotFoundError):
            await trade_service.create_trade(alice.id, alice_book.id, 9999)

    @pytest.mark.asyncio
    async def test_offering_someone_elses_book(self, trade_service, alice, bob_book, carol_book):
        with pytest.raises(AuthorizationError):
            await trade_service.create_trade(alice.id, carol_book.id, bob_book.id)

    @pytest.mark.asyncio
    async def test_requesting_own_book(self, trade_service, async_session, alice, alice_book):
        other = await create_book(async_session, alice, "Foundation")

        with pytest.raises(InvalidTradeError):
            await trade_service.create_trade(alice.id, alice_book.id, other.id)

    @pytest.mark.asyncio
    async def test_same_book_on_both_sides(self, trade_service, alice, alice_book):
        with pytest.raises(InvalidTradeError):
            await trade_service.create_trade(alice.id, alice_book.id, alice_book.id)

    @pytest.mark.asyncio
    async def test_unavailable_book(self, trade_service, async_session, alice, bob, alice_book):
        lent_out = await create_book(async_session, bob, "Snow Crash", is_available=False)

        with pytest.raises(ConflictError):
            await trade_service.create_trade(alice.id, alice_book.id, lent_out.id)

    @pytest.mark.asyncio
    async def test_duplicate_open_proposal(self, trade_service, alice, alice_book, bob_book):
        await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        with pytest.raises(ConflictError):
            await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)


class TestStatusTransitions:

    @pytest.mark.asyncio
    async def test_accept_reserves_both_books(
        self, trade_service, async_session, channel_manager, alice, bob, alice_book, bob_book
    ):
        alice_socket = FakeWebSocket()
        channel_manager.register(alice.id, alice_socket)
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        accepted = await trade_service.update_status(trade.id, bob.id, "accepted")

        assert accepted.status == TradeStatus.ACCEPTED
        assert accepted.is_seen is True
        assert accepted.accepted_at is not None
        assert accepted.can_complete is True

        await async_session.refresh(alice_book)
        await async_session.refresh(bob_book)
        assert alice_book.is_available is False
        assert bob_book.is_available is False

        assert len(alice_socket.messages_of_type("trade_accepted")) == 1

    @pytest.mark.asyncio
    async def test_reject_notifies_initiator_and_keeps_books(
        self, trade_service, async_session, channel_manager, alice, bob, alice_book, bob_book
    ):
        alice_socket = FakeWebSocket()
        channel_manager.register(alice.id, alice_socket)
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        rejected = await trade_service.update_status(trade.id, bob.id, TradeStatus.REJECTED)

        assert rejected.status == TradeStatus.REJECTED
        await async_session.refresh(bob_book)
        assert bob_book.is_available is True
        assert len(alice_socket.messages_of_type("trade_rejected")) == 1

    @pytest.mark.asyncio
    async def test_cancel_notifies_receiver(
        self, trade_service, channel_manager, alice, bob, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        bob_socket = FakeWebSocket()
        channel_manager.register(bob.id, bob_socket)

        cancelled = await trade_service.update_status(trade.id, alice.id, "cancelled")

        assert cancelled.status == TradeStatus.CANCELLED
        system_messages = bob_socket.messages_of_type("system")
        assert len(system_messages) == 1
        assert system_messages[0]["payload"]["tradeId"] == str(trade.id)

    @pytest.mark.asyncio
    async def test_only_receiver_can_accept(self, trade_service, alice, carol, alice_book, bob_book):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        with pytest.raises(AuthorizationError):
            await trade_service.update_status(trade.id, alice.id, "accepted")
        with pytest.raises(AuthorizationError):
            await trade_service.update_status(trade.id, carol.id, "rejected")

    @pytest.mark.asyncio
    async def test_only_initiator_can_cancel(self, trade_service, alice, bob, alice_book, bob_book):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        with pytest.raises(AuthorizationError):
            await trade_service.update_status(trade.id, bob.id, "cancelled")

    @pytest.mark.asyncio
    async def test_unsupported_target_status(self, trade_service, alice, bob, alice_book, bob_book):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        with pytest.raises(InvalidTradeError):
            await trade_service.update_status(trade.id, bob.id, "completed")
        with pytest.raises(InvalidTradeError):
            await trade_service.update_status(trade.id, bob.id, "bogus")

    @pytest.mark.asyncio
    async def test_unknown_trade(self, trade_service, bob):
        with pytest.raises(NotFoundError):
            await trade_service.update_status(9999, bob.id, "accepted")

    @pytest.mark.asyncio
    async def test_transitions_only_move_forward(
        self, trade_service, alice, bob, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        await trade_service.update_status(trade.id, bob.id, "rejected")

        with pytest.raises(ConflictError):
            await trade_service.update_status(trade.id, bob.id, "accepted")
        with pytest.raises(ConflictError):
            await trade_service.update_status(trade.id, alice.id, "cancelled")
        with pytest.raises(ConflictError):
            await trade_service.complete_trade(trade.id, bob.id)

        current = await trade_service.get_trade(trade.id, alice.id)
        assert current.status == TradeStatus.REJECTED

    @pytest.mark.asyncio
    async def test_accepted_trade_cannot_be_cancelled(
        self, trade_service, alice, bob, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        await trade_service.update_status(trade.id, bob.id, "accepted")

        with pytest.raises(ConflictError):
            await trade_service.update_status(trade.id, alice.id, "cancelled")


class TestCompleteTrade:

    @pytest.mark.asyncio
    async def test_completion_swaps_owners(
        self, trade_service, async_session, channel_manager, alice, bob, alice_book, bob_book
    ):
        alice_socket, bob_socket = FakeWebSocket(), FakeWebSocket()
        channel_manager.register(alice.id, alice_socket)
        channel_manager.register(bob.id, bob_socket)

        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        await trade_service.update_status(trade.id, bob.id, "accepted")
        completed = await trade_service.complete_trade(trade.id, alice.id)

        assert completed.status == TradeStatus.COMPLETED
        assert completed.completed_at is not None

        await async_session.refresh(alice_book)
        await async_session.refresh(bob_book)
        assert alice_book.owner_id == bob.id
        assert bob_book.owner_id == alice.id
        assert alice_book.is_available is True
        assert bob_book.is_available is True

        assert len(alice_socket.messages_of_type("trade_completed")) == 1
        assert len(bob_socket.messages_of_type("trade_completed")) == 1

    @pytest.mark.asyncio
    async def test_swapped_books_can_be_traded_again(
        self, trade_service, alice, bob, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        await trade_service.update_status(trade.id, bob.id, "accepted")
        await trade_service.complete_trade(trade.id, bob.id)

        again = await trade_service.create_trade(bob.id, alice_book.id, bob_book.id)

        assert again.receiver_id == alice.id

    @pytest.mark.asyncio
    async def test_pending_trade_cannot_complete(
        self, trade_service, alice, bob, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        with pytest.raises(ConflictError):
            await trade_service.complete_trade(trade.id, bob.id)

    @pytest.mark.asyncio
    async def test_outsider_cannot_complete(
        self, trade_service, alice, bob, carol, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        await trade_service.update_status(trade.id, bob.id, "accepted")

        with pytest.raises(AuthorizationError):
            await trade_service.complete_trade(trade.id, carol.id)


class TestDoubleBooking:

    @pytest.mark.asyncio
    async def test_acceptance_rejects_competing_proposals(
        self, trade_service, channel_manager, alice, bob, carol, alice_book, bob_book, carol_book
    ):
        first = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        second = await trade_service.create_trade(carol.id, carol_book.id, bob_book.id)
        carol_socket = FakeWebSocket()
        channel_manager.register(carol.id, carol_socket)

        await trade_service.update_status(first.id, bob.id, "accepted")

        losing = await trade_service.get_trade(second.id, bob.id)
        assert losing.status == TradeStatus.REJECTED
        assert losing.can_accept is False
        assert await trade_service.unseen_count(bob.id) == 0

        rejections = carol_socket.messages_of_type("trade_rejected")
        assert [m["payload"]["tradeId"] for m in rejections] == [str(second.id)]

        with pytest.raises(ConflictError):
            await trade_service.update_status(second.id, bob.id, "accepted")

    @pytest.mark.asyncio
    async def test_reserved_book_backs_one_active_trade(
        self, trade_service, async_session, alice, bob, carol, alice_book, bob_book, carol_book
    ):
        dave_book = await create_book(async_session, carol, "Solaris")
        accepted = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        await trade_service.create_trade(carol.id, carol_book.id, bob_book.id)
        await trade_service.create_trade(alice.id, alice_book.id, dave_book.id)
        bobs_offer = await trade_service.create_trade(bob.id, bob_book.id, carol_book.id)

        await trade_service.update_status(accepted.id, bob.id, "accepted")

        for book in (alice_book, bob_book):
            active = (
                await async_session.execute(
                    select(Trade.id).where(
                        Trade.status.in_(ACTIVE_STATUSES),
                        (Trade.book_offered_id == book.id) | (Trade.book_requested_id == book.id),
                    )
                )
            ).scalars().all()
            assert active == [accepted.id]

        assert (await trade_service.get_trade(bobs_offer.id, bob.id)).status == TradeStatus.REJECTED
        assert await trade_service.unseen_count(carol.id) == 0

    @pytest.mark.asyncio
    async def test_concurrent_accepts_have_one_winner(
        self, trade_service, session_factory, entity_locks,
        alice, bob, carol, alice_book, bob_book, carol_book,
    ):
        first = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        second = await trade_service.create_trade(carol.id, carol_book.id, bob_book.id)

        async def accept(trade_id: int):
            async with session_factory() as db:
                service = TradeService(db, dispatcher=None, locks=entity_locks)
                return await service.update_status(trade_id, bob.id, "accepted")

        results = await asyncio.gather(
            accept(first.id), accept(second.id), return_exceptions=True
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(conflicts) == 1
        assert len(winners) == 1

        async with session_factory() as db:
            contested = await db.get(Book, bob_book.id)
            assert contested.is_available is False
            assert contested.version_id == 2

            statuses = (await db.execute(select(Trade.status).order_by(Trade.id))).scalars().all()
            assert sorted(s.value for s in statuses) == ["accepted", "rejected"]

        assert entity_locks.held_count() == 0

    @pytest.mark.asyncio
    async def test_concurrent_accepts_of_one_trade(
        self, trade_service, session_factory, entity_locks, alice, bob, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        async def accept():
            async with session_factory() as db:
                service = TradeService(db, dispatcher=None, locks=entity_locks)
                return await service.update_status(trade.id, bob.id, "accepted")

        results = await asyncio.gather(accept(), accept(), return_exceptions=True)

        assert len([r for r in results if isinstance(r, ConflictError)]) == 1
        assert len([r for r in results if not isinstance(r, Exception)]) == 1

        async with session_factory() as db:
            for book_id in (alice_book.id, bob_book.id):
                book = await db.get(Book, book_id)
                assert book.is_available is False
                assert book.version_id == 2
            assert (await db.get(Trade, trade.id)).status == TradeStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_stale_write_maps_to_conflict(self, session_factory, entity_locks, bob_book):
        async with session_factory() as first, session_factory() as second:
            stale = await first.get(Book, bob_book.id)
            fresh = await second.get(Book, bob_book.id)

            fresh.is_available = False
            await second.commit()

            stale.is_available = False
            with pytest.raises(ConflictError):
                await TradeService(first, dispatcher=None, locks=entity_locks)._commit()


class TestSeenState:

    @pytest.mark.asyncio
    async def test_mark_seen_is_idempotent(
        self, trade_service, async_session, alice, bob, carol, alice_book, bob_book, carol_book
    ):
        await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        await trade_service.create_trade(carol.id, carol_book.id, bob_book.id)

        assert await trade_service.unseen_count(bob.id) == 2
        assert await trade_service.mark_seen(bob.id) == 2
        assert await trade_service.mark_seen(bob.id) == 0
        assert await trade_service.unseen_count(bob.id) == 0

    @pytest.mark.asyncio
    async def test_mark_seen_ignores_initiated_trades(
        self, trade_service, alice, bob, alice_book, bob_book
    ):
        await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        assert await trade_service.mark_seen(alice.id) == 0
        assert await trade_service.unseen_count(bob.id) == 1

    @pytest.mark.asyncio
    async def test_mark_seen_reflected_in_view(
        self, trade_service, alice, bob, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        await trade_service.mark_seen(bob.id)

        view = await trade_service.get_trade(trade.id, bob.id)
        assert view.is_seen is True


class TestTradeQueries:

    @pytest.mark.asyncio
    async def test_list_by_role_and_status(
        self, trade_service, alice, bob, carol, alice_book, bob_book, carol_book
    ):
        initiated = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)
        received = await trade_service.create_trade(carol.id, carol_book.id, alice_book.id)
        await trade_service.update_status(initiated.id, bob.id, "rejected")

        everything = await trade_service.list_user_trades(alice.id)
        assert {t.id for t in everything} == {initiated.id, received.id}

        mine = await trade_service.list_user_trades(alice.id, role=TradeRole.INITIATED)
        assert [t.id for t in mine] == [initiated.id]

        incoming = await trade_service.list_user_trades(alice.id, role=TradeRole.RECEIVED)
        assert [t.id for t in incoming] == [received.id]
        assert incoming[0].can_accept is True

        rejected = await trade_service.list_user_trades(alice.id, status_filter=TradeStatus.REJECTED)
        assert [t.id for t in rejected] == [initiated.id]

    @pytest.mark.asyncio
    async def test_list_respects_limit(
        self, trade_service, async_session, alice, bob, bob_book
    ):
        for title in ("A", "B", "C"):
            book = await create_book(async_session, alice, title)
            await trade_service.create_trade(alice.id, book.id, bob_book.id)

        trades = await trade_service.list_user_trades(bob.id, limit=2)
        assert len(trades) == 2

    @pytest.mark.asyncio
    async def test_get_trade_is_participant_only(
        self, trade_service, alice, carol, alice_book, bob_book
    ):
        trade = await trade_service.create_trade(alice.id, alice_book.id, bob_book.id)

        with pytest.raises(AuthorizationError):
            await trade_service.get_trade(trade.id, carol.id)
        with pytest.raises(NotFoundError):
            await trade_service.get_trade(9999, alice.id)
