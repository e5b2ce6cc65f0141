from __future__ import annotations

from typing import Optional


class BackoffStrategy:
    """Linear backoff for retry delays.

    The delay after failed attempt ``n`` is ``n * base_seconds``, capped at a
    configurable maximum."""

    def __init__(self, base_seconds: float = 1.0, max_seconds: float = 30.0) -> None:
        if base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        self._base = base_seconds
        self._max = max_seconds

    def get_sleep(self, attempt: int, error_type: Optional[str] = None) -> float:
        """Calculate the sleep duration in seconds after the given failed attempt."""
        return min(self._max, self._base * max(attempt, 0))
