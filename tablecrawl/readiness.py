"""Readiness predicates for rendered fetches.

A predicate is a plain function over a PageState snapshot. The dispatcher
takes snapshots of the live page at a fixed interval and stops as soon as the
predicate holds, or when max_wait runs out; in that case the last snapshot
that had any HTML is used as best-effort content.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Tuple

from .models import PageState

Predicate = Callable[[PageState], bool]

CHALLENGE_TITLES = ("Just a moment", "Checking your browser", "Attention Required", "请稍候")
CHALLENGE_MARKERS = ('id="challenge-error-text"', 'name="cf-turnstile-response"', "challenge-platform")

_TABLE_RE = re.compile(r"<table\b", re.IGNORECASE)


@dataclass(frozen=True)
class ReadinessCheck:
    predicate: Predicate
    max_wait: float = 15.0
    interval: float = 1.0
    initial_delay: float = 0.0

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError("interval must be > 0")
        if self.max_wait < 0 or self.initial_delay < 0:
            raise ValueError("max_wait and initial_delay must be >= 0")


def table_present(min_count: int = 1) -> Predicate:
    def _check(state: PageState) -> bool:
        return len(_TABLE_RE.findall(state.html or "")) >= min_count

    return _check


def title_contains(text: str) -> Predicate:
    def _check(state: PageState) -> bool:
        return text in (state.title or "")

    return _check


def challenge_cleared(
    titles: Sequence[str] = CHALLENGE_TITLES,
    markers: Sequence[str] = CHALLENGE_MARKERS,
) -> Predicate:
    """True once neither the title nor the markup looks like a challenge wall."""

    def _check(state: PageState) -> bool:
        title = state.title or ""
        if any(t in title for t in titles):
            return False
        html = state.html or ""
        return not any(m in html for m in markers)

    return _check


def any_of(*predicates: Predicate) -> Predicate:
    def _check(state: PageState) -> bool:
        return any(p(state) for p in predicates)

    return _check


def all_of(*predicates: Predicate) -> Predicate:
    def _check(state: PageState) -> bool:
        return all(p(state) for p in predicates)

    return _check


async def wait_until_ready(
    snapshot: Callable[[], Awaitable[PageState]],
    check: ReadinessCheck,
) -> Tuple[bool, PageState]:
    """Poll ``snapshot`` until ``check.predicate`` holds or max_wait elapses.

    Returns ``(ready, state)``. On timeout ``state`` is the latest snapshot
    with non-empty HTML, so a page that failed to answer on the final poll
    still yields what was seen before.
    """
    start = time.monotonic()
    kept: Optional[PageState] = None
    if check.initial_delay > 0:
        await asyncio.sleep(min(check.initial_delay, check.max_wait))
    while True:
        state = await snapshot()
        if check.predicate(state):
            return True, state
        if state.html:
            kept = state
        remaining = check.max_wait - (time.monotonic() - start)
        if remaining <= 0:
            return False, kept or state
        await asyncio.sleep(min(check.interval, remaining))
