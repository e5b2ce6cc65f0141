from __future__ import annotations

import asyncio
from typing import Optional


class DispatchSlots:
    """Bounded pool of dispatch slots shared by every fetch.

    acquire() suspends while the pool is full and returns False once the pool
    has been stopped, so a shutdown stops admitting new requests while those
    already holding a slot run to completion."""

    def __init__(self, limit: int) -> None:
        self._cv = asyncio.Condition()
        self._limit = max(1, int(limit))
        self._active = 0
        self._running = True

    async def acquire(self) -> bool:
        async with self._cv:
            while self._running and self._active >= self._limit:
                await self._cv.wait()
            if not self._running:
                return False
            self._active += 1
            return True

    async def release(self) -> None:
        async with self._cv:
            self._active = max(0, self._active - 1)
            self._cv.notify_all()

    async def stop(self) -> None:
        async with self._cv:
            self._running = False
            self._cv.notify_all()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no slot is held. Returns False if the timeout expired."""

        async def _drained() -> None:
            async with self._cv:
                await self._cv.wait_for(lambda: self._active == 0)

        try:
            await asyncio.wait_for(_drained(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active
