from .base import Base
from .book import Book, BookCondition
from .trade import Trade, TradeStatus
from .user import User

__all__ = [
    "Base",
    "User",
    "Book",
    "BookCondition",
    "Trade",
    "TradeStatus",
]
