import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.auth import user_id_from_token
from ..models.user import User

logger = logging.getLogger(__name__)


class WebSocketAuthenticator:
    """Resolves a handshake token to an active user id, or None."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def __call__(self, token: str) -> int | None:
        user_id = user_id_from_token(token)
        if user_id is None:
            logger.debug("Handshake token failed verification")
            return None

        async with self.session_factory() as db:
            result = await db.execute(
                select(User.id).where(User.id == user_id, User.is_active)
            )
            if result.scalar_one_or_none() is None:
                logger.info(f"Handshake for unknown or inactive user {user_id}")
                return None

        return user_id
