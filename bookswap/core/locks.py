import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager

LockKey = tuple[str, int]


class EntityLocks:
    """Keyed asyncio locks guarding mutations of individual trades and books.

    Entries are dropped once no task holds or waits for them, so the registry
    only grows with the number of entities under concurrent mutation.
    """

    def __init__(self):
        self._locks: dict[LockKey, asyncio.Lock] = {}
        self._users: dict[LockKey, int] = {}

    @asynccontextmanager
    async def hold(self, key: LockKey) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[LockKey]) -> AsyncIterator[None]:
        # Sorted acquisition keeps two multi-key holders from deadlocking.
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.hold(key))
            yield

    def held_count(self) -> int:
        return len(self._locks)


def trade_key(trade_id: int) -> LockKey:
    return ("trade", trade_id)


def book_key(book_id: int) -> LockKey:
    return ("book", book_id)
