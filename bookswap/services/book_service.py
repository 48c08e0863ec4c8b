import json
import logging

from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookswap.core.exceptions import AuthorizationError, ConflictError, NotFoundError
from bookswap.core.locks import EntityLocks, book_key
from bookswap.models.book import Book
from bookswap.models.trade import ACTIVE_STATUSES, Trade
from bookswap.models.types import utcnow
from bookswap.schemas.book import BookCreate, BookUpdate

logger = logging.getLogger(__name__)


def like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class BookService:
    def __init__(self, db: AsyncSession, locks: EntityLocks | None = None):
        self.db = db
        self.locks = locks or EntityLocks()

    async def get_book(self, book_id: int) -> Book:
        book = await self.db.get(Book, book_id)
        if not book:
            raise NotFoundError("Book not found")
        return book

    async def list_books(
        self,
        available_only: bool = True,
        owner_id: int | None = None,
        genre: str | None = None,
        search: str | None = None,
        limit: int = 50,
    ) -> list[Book]:
        query = select(Book)

        if available_only:
            query = query.where(Book.is_available)
        if owner_id is not None:
            query = query.where(Book.owner_id == owner_id)
        if search:
            pattern = like_pattern(search.strip())
            query = query.where(
                or_(
                    Book.title.ilike(pattern, escape="\\"),
                    Book.author.ilike(pattern, escape="\\"),
                )
            )
        if genre:
            # Genres are stored as a JSON array of strings; match one quoted element.
            pattern = like_pattern(json.dumps(genre.strip()))
            query = query.where(cast(Book.genres, String).ilike(pattern, escape="\\"))

        query = query.order_by(Book.created_at.desc(), Book.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_book(self, owner_id: int, data: BookCreate) -> Book:
        now = utcnow()
        book = Book(
            owner_id=owner_id,
            is_available=True,
            created_at=now,
            updated_at=now,
            **data.model_dump(),
        )
        self.db.add(book)
        await self.db.commit()

        logger.info(f"Book {book.id} listed by user {owner_id}")
        return book

    async def update_book(self, book_id: int, actor_id: int, data: BookUpdate) -> Book:
        book = await self.get_book(book_id)
        if book.owner_id != actor_id:
            raise AuthorizationError("Not authorized to update this book")

        for field_name, value in data.model_dump(exclude_unset=True).items():
            setattr(book, field_name, value)
        book.updated_at = utcnow()

        await self.db.commit()
        return book

    async def delete_book(self, book_id: int, actor_id: int) -> None:
        # Shares the book key with trade creation.
        async with self.locks.hold(book_key(book_id)):
            book = await self.db.get(Book, book_id, with_for_update=True, populate_existing=True)
            if not book:
                raise NotFoundError("Book not found")
            if book.owner_id != actor_id:
                raise AuthorizationError("Not authorized to delete this book")

            if await self.count_trades(book_id, active_only=True):
                raise ConflictError("Book is part of an active trade and cannot be deleted")
            if await self.count_trades(book_id):
                raise ConflictError("Book has trade history and cannot be deleted")

            await self.db.delete(book)
            await self.db.commit()
        logger.info(f"Book {book_id} deleted by user {actor_id}")

    async def count_trades(self, book_id: int, active_only: bool = False) -> int:
        query = select(func.count(Trade.id)).where(
            or_(Trade.book_offered_id == book_id, Trade.book_requested_id == book_id)
        )
        if active_only:
            query = query.where(Trade.status.in_(ACTIVE_STATUSES))

        result = await self.db.execute(query)
        return result.scalar_one()
