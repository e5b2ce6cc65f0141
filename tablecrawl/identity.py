from __future__ import annotations

import random
from typing import Callable, Optional, Sequence

from fake_useragent import UserAgent

from .log import get_logger

logger = get_logger(__name__)

STATIC = "static"
ROTATING = "rotating"

DESKTOP_IDENTITIES = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0",
)

MOBILE_IDENTITIES = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_6 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.6 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Android 14; Mobile; rv:133.0) Gecko/133.0 Firefox/133.0",
    "Mozilla/5.0 (Linux; Android 14; SM-S918B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36",
)

_user_agents: Optional[UserAgent] = None


def plausible_identity() -> str:
    """Pick a real-world user agent from fake_useragent's bundled browser data."""
    global _user_agents
    if _user_agents is None:
        _user_agents = UserAgent()
    return _user_agents.random


class IdentityRotator:
    """Supplies the user-agent string sent with each request.

    In static mode the first pool entry is always returned. In rotating mode
    the generator is asked for a value; if it fails the rotator cycles the
    pool instead."""

    def __init__(
        self,
        mode: str = STATIC,
        pool: Optional[Sequence[str]] = None,
        generator: Optional[Callable[[], str]] = plausible_identity,
    ) -> None:
        if mode not in (STATIC, ROTATING):
            raise ValueError(f"Unknown identity mode: {mode}")
        self._mode = mode
        self._pool = tuple(pool) if pool else DESKTOP_IDENTITIES
        self._generator = generator
        self._index = 0

    @property
    def mode(self) -> str:
        return self._mode

    def next_identity(self) -> str:
        if self._mode == STATIC:
            return self._pool[0]
        if self._generator is not None:
            try:
                value = self._generator()
                if isinstance(value, str) and value:
                    return value
                logger.debug("identity generator returned empty value")
            except Exception as exc:  # noqa: BLE001
                logger.warning("identity generator failed", error=str(exc))
        return self._next_from_pool()

    def desktop_identity(self) -> str:
        if self._mode == STATIC:
            return self._pool[0]
        return self._next_from_pool()

    def mobile_identity(self) -> str:
        return random.choice(MOBILE_IDENTITIES)

    def reset(self) -> None:
        self._index = 0

    def _next_from_pool(self) -> str:
        value = self._pool[self._index]
        self._index = (self._index + 1) % len(self._pool)
        return value
