"""Per-key operation serialization.

Operations against the same entity id queue behind one another; operations
on different ids never wait for each other. Locks are created on demand and
dropped once nobody holds or waits for them.

Example:
    >>> locks = KeyedLocks()
    >>> async with locks.hold("challenges", challenge_id):
    ...     challenge = await read(challenge_id)
    ...     challenge.books.append(isbn)
    ...     await write(challenge)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLocks:
    """A lazily populated map of ``(namespace, key) -> asyncio.Lock``."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, namespace: str, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` in ``namespace`` for the duration of the block."""
        slot = (str(namespace), key)
        lock = self._locks.setdefault(slot, asyncio.Lock())
        self._users[slot] = self._users.get(slot, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[slot] -= 1
            if self._users[slot] == 0:
                del self._users[slot]
                del self._locks[slot]

    def is_locked(self, namespace: str, key: str) -> bool:
        lock = self._locks.get((str(namespace), key))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
