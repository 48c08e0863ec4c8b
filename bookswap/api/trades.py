from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from bookswap.config import settings
from bookswap.core.dependencies import CurrentUser, TradeServiceDep
from bookswap.models.trade import TradeStatus
from bookswap.schemas.trade import (
    MarkSeenResponse,
    TradeCompleteResponse,
    TradeCreate,
    TradeRole,
    TradeStatusUpdate,
    TradeView,
    UnseenCountResponse,
)

router = APIRouter()


@router.post("", response_model=TradeView, status_code=status.HTTP_201_CREATED)
async def create_trade(
    data: TradeCreate,
    current_user: CurrentUser,
    service: TradeServiceDep,
) -> TradeView:
    return await service.create_trade(
        initiator_id=current_user.id,
        book_offered_id=data.book_offered,
        book_requested_id=data.book_requested,
        message=data.message,
    )


@router.get("", response_model=list[TradeView])
async def list_trades(
    current_user: CurrentUser,
    service: TradeServiceDep,
    status: str | None = None,
    role: TradeRole | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = settings.TRADE_LIST_LIMIT,
) -> list[TradeView]:
    status_filter = None
    if status:
        try:
            status_filter = TradeStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid status value. Must be one of: {', '.join(s.value for s in TradeStatus)}",
            )

    return await service.list_user_trades(
        user_id=current_user.id,
        status_filter=status_filter,
        role=role,
        limit=limit,
    )


@router.get("/unseen-count", response_model=UnseenCountResponse)
async def get_unseen_count(
    current_user: CurrentUser,
    service: TradeServiceDep,
) -> UnseenCountResponse:
    return UnseenCountResponse(count=await service.unseen_count(current_user.id))


@router.put("/mark-seen", response_model=MarkSeenResponse)
async def mark_trades_seen(
    current_user: CurrentUser,
    service: TradeServiceDep,
) -> MarkSeenResponse:
    updated_count = await service.mark_seen(current_user.id)
    return MarkSeenResponse(message="Trades marked as seen", updated_count=updated_count)


@router.get("/{trade_id}", response_model=TradeView)
async def get_trade(
    trade_id: int,
    current_user: CurrentUser,
    service: TradeServiceDep,
) -> TradeView:
    return await service.get_trade(trade_id, current_user.id)


@router.put("/{trade_id}", response_model=TradeView)
async def update_trade_status(
    trade_id: int,
    data: TradeStatusUpdate,
    current_user: CurrentUser,
    service: TradeServiceDep,
) -> TradeView:
    return await service.update_status(trade_id, current_user.id, data.status)


@router.put("/{trade_id}/complete", response_model=TradeCompleteResponse)
async def complete_trade(
    trade_id: int,
    current_user: CurrentUser,
    service: TradeServiceDep,
) -> TradeCompleteResponse:
    trade = await service.complete_trade(trade_id, current_user.id)
    return TradeCompleteResponse(message="Trade completed successfully", trade_id=trade.id)
