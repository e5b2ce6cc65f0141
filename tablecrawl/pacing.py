from __future__ import annotations

import asyncio
import random
import time
from collections import defaultdict
from typing import Dict, Optional


class PacingGate:
    """Per-domain pacing with a randomized minimum spacing.

    Calling wait_for_slot() suspends the current task until a delay, drawn
    uniformly from [min_delay, max_delay] at call time, has passed since the
    previous request to the same domain. Callers for one domain are
    serialized; other domains are paced independently."""

    def __init__(self, min_delay: float, max_delay: float) -> None:
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError(f"invalid delay window [{min_delay}, {max_delay}]")
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._last_request: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def draw_delay(self) -> float:
        return random.uniform(self._min_delay, self._max_delay)

    async def wait_for_slot(self, domain: str) -> None:
        """Suspend until the domain may be contacted again, then stamp it."""
        async with self._locks[domain]:
            delay = self.draw_delay()
            last = self._last_request.get(domain)
            if last is not None:
                elapsed = time.monotonic() - last
                if elapsed < delay:
                    await asyncio.sleep(delay - elapsed)
            now = time.monotonic()
            if last is not None and now < last:
                now = last
            self._last_request[domain] = now

    def last_request(self, domain: str) -> Optional[float]:
        return self._last_request.get(domain)

    def reset(self, domain: str) -> None:
        self._last_request.pop(domain, None)

    def clear_all(self) -> None:
        self._last_request.clear()

    @property
    def active_domains(self) -> int:
        return len(self._last_request)
