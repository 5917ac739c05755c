"""In-process per-credential locks.

Every mutation of a credential row (sync pass, token refresh inside it, user
revoke) happens while holding the lock for that credential id.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class CredentialLocks:
    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, credential_id: int) -> asyncio.Lock:
        lock = self._locks.get(credential_id)
        if lock is None:
            lock = self._locks[credential_id] = asyncio.Lock()
        return lock

    def is_held(self, credential_id: int) -> bool:
        return self._lock_for(credential_id).locked()

    @asynccontextmanager
    async def try_hold(self, credential_id: int) -> AsyncIterator[bool]:
        """Acquire without waiting. Yields False when another holder has it."""
        lock = self._lock_for(credential_id)
        if lock.locked():
            yield False
            return
        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()

    @asynccontextmanager
    async def hold(self, credential_id: int) -> AsyncIterator[None]:
        """Acquire, waiting for the current holder to finish."""
        async with self._lock_for(credential_id):
            yield
