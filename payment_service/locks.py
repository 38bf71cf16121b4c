import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager


class KeyedLock:
    """Process-local asyncio locks keyed by record id, dropped once nobody waits on them."""

    def __init__(self):
        self._locks = {}
        self._users = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
