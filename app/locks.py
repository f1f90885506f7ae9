from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from app.errors import EntityBusyError
from app.logger import get_logger

_logger = get_logger("locks")


class KeyedLocks:
    """One ``asyncio.Lock`` per entity id; a held key rejects instead of queueing."""

    def __init__(self, kind: str) -> None:
        self._kind = kind
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str, *, action: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            _logger.warning(
                "lock.busy",
                "Rejected concurrent operation",
                kind=self._kind,
                key=key,
                action=action,
            )
            raise EntityBusyError(
                f"Another operation is already running for {self._kind} {key}; try again later"
            )
        # No await between the locked() check and acquire, so this never blocks.
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if not lock.locked() and self._locks.get(key) is lock:
                self._locks.pop(key, None)


service_locks = KeyedLocks("service")
domain_locks = KeyedLocks("domain")
