"""Per-entity mutual exclusion.

Work on different deadlines or notifications runs concurrently; work on
the same entity is serialized. A lock is held for one state transition
only, never across a provider call, and is discarded once nobody holds
or waits for it.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class EntityLocks:
    """Keyed asyncio locks, e.g. ``("notification", id)``."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, kind: str, entity_id: str) -> AsyncIterator[None]:
        key = (kind, entity_id)
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

    def notification(self, notification_id: str):
        return self.hold("notification", notification_id)

    def deadline(self, deadline_id: str):
        return self.hold("deadline", deadline_id)

    def __len__(self) -> int:
        return len(self._locks)
