"""Shared pieces of push ingestion adapters."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from pydantic import BaseModel, Field

from ..logging_utils import ConnectionBusy


class IngestionResult(BaseModel):
    """Outcome of one notification, returned to the delivery transport."""

    success: bool
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    retryable: bool = False
    reason: str | None = None
    cursor: str | None = None
    event_ids: list[UUID] = Field(default_factory=list)


class ConnectionLocks:
    """Per-connection mutexes with a bounded wait.

    One registry is created per adapter and injected; locks for idle
    connections are dropped once nobody holds or waits for them.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key``.

        Raises:
            ConnectionBusy: If the lock is not acquired within ``timeout`` seconds.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), self.timeout)
            except TimeoutError as e:
                raise ConnectionBusy(
                    f"Timed out waiting for connection lock after {self.timeout}s",
                    connection_key=key,
                ) from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
