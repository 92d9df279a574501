"""
Per-session locks — at most one turn in flight per (bot, user).

Locks are created on demand and dropped once nobody holds or waits on them,
so the table only grows with concurrently active conversations.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class SessionLocks:

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @staticmethod
    def key(bot_id: str, user_id: str) -> str:
        return f"{bot_id}:{user_id}"

    @asynccontextmanager
    async def hold(self, bot_id: str, user_id: str) -> AsyncIterator[None]:
        key = self.key(bot_id, user_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, bot_id: str, user_id: str) -> bool:
        lock = self._locks.get(self.key(bot_id, user_id))
        return bool(lock and lock.locked())
