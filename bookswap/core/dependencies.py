from typing import Annotated

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookswap.database import get_db
from bookswap.models.user import User
from bookswap.services.book_service import BookService
from bookswap.services.trade_service import TradeService

from .auth import user_id_from_token

bearer = HTTPBearer(auto_error=False)

DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


async def get_current_user(
    db: DatabaseSession,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer)],
    access_token: str | None = Cookie(None),
) -> User:
    token = credentials.credentials if credentials else access_token
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated"
        )

    user_id = user_id_from_token(token)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token"
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found"
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user"
        )

    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


async def get_trade_service(request: Request, db: DatabaseSession) -> TradeService:
    return TradeService(
        db,
        dispatcher=request.app.state.dispatcher,
        locks=request.app.state.entity_locks,
    )


async def get_book_service(request: Request, db: DatabaseSession) -> BookService:
    return BookService(db, locks=request.app.state.entity_locks)


TradeServiceDep = Annotated[TradeService, Depends(get_trade_service)]
BookServiceDep = Annotated[BookService, Depends(get_book_service)]
