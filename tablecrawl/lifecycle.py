from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence, runtime_checkable

from .dispatcher import FetchDispatcher
from .errors import PersistenceError
from .log import get_logger
from .models import CrawlRun, FetchMode, FetchOptions, FetchResult, Phase, RenderOptions
from .storage import Storage


class LifecycleState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    HISTORICAL = "historical"
    INCREMENTAL = "incremental"
    COMPLETED = "completed"
    FAILED = "failed"


@runtime_checkable
class Crawler(Protocol):
    """What a crawler plugin must provide.

    Both routines receive the running CrawlLifecycle, whose fetch helpers
    count requests against the current run, and return a list of records.
    They may raise; the lifecycle records the failure. Plugins may also
    define optional ``initialize()`` and ``cleanup()`` coroutines.
    """

    name: str

    async def crawl_historical(self, ctx: "CrawlLifecycle") -> List[Any]:
        ...

    async def crawl_incremental(self, ctx: "CrawlLifecycle") -> List[Any]:
        ...


@dataclass(frozen=True)
class BatchItem:
    url: str
    ok: bool
    value: Any = None
    error: Optional[str] = None


class CrawlLifecycle:
    """Drives one crawler through initializing, historical and incremental phases.

    At most one run is live at a time; a second run() while one is active is
    rejected with False. The run slot is released on every exit path.
    """

    def __init__(self, crawler: Crawler, dispatcher: FetchDispatcher, storage: Storage) -> None:
        self.crawler = crawler
        self.name = crawler.name
        self.dispatcher = dispatcher
        self.storage = storage
        self.logger = get_logger(f"tablecrawl.crawler.{self.name}")
        self._state = LifecycleState.IDLE
        self._run: Optional[CrawlRun] = None
        self._last_run: Optional[CrawlRun] = None
        self._task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()
        self._done.set()
        self._stop_requested = False

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._run is not None

    @property
    def current_run(self) -> Optional[CrawlRun]:
        return self._run

    @property
    def last_run(self) -> Optional[CrawlRun]:
        return self._last_run

    @property
    def last_error(self) -> Optional[str]:
        return self._last_run.error if self._last_run else None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def run(self, force_historical: bool = False) -> bool:
        if self._run is not None:
            self.logger.warning("run rejected, crawler already running")
            return False

        run = CrawlRun(crawler_name=self.name)
        self._run = run
        self._done.clear()
        self._stop_requested = False
        self._transition(LifecycleState.INITIALIZING)
        # The phases run in a task of their own so cancel() reaches this
        # crawler only, never the batch or scheduler awaiting it.
        task = asyncio.ensure_future(self._execute(force_historical))
        self._task = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                # The caller was cancelled; take the crawler down with it.
                task.cancel()
                await asyncio.wait({task})
                self._finish(run, LifecycleState.FAILED, "cancelled")
                raise
            self._finish(run, LifecycleState.FAILED, "cancelled")
            return False
        except Exception as exc:  # noqa: BLE001
            self._finish(run, LifecycleState.FAILED, f"{type(exc).__name__}: {exc}")
            return False
        else:
            self._finish(run, LifecycleState.COMPLETED, "stopped" if self._stop_requested else None)
            return True
        finally:
            if self._run is run:
                self._finish(run, LifecycleState.FAILED, "run ended unexpectedly")
            self._task = None
            self._done.set()

    async def _execute(self, force_historical: bool) -> None:
        await self._initialize()
        has_historical = await self.storage.has_historical_data(self.name)
        if not has_historical or force_historical:
            await self._run_phase(Phase.HISTORICAL, self.crawler.crawl_historical)
        else:
            self.logger.info("historical data present, skipping historical phase")
        if self._stop_requested:
            self.logger.info("stop requested, skipping incremental phase")
            return
        await self._run_phase(Phase.INCREMENTAL, self.crawler.crawl_incremental)

    async def _initialize(self) -> None:
        hook = getattr(self.crawler, "initialize", None)
        if hook is not None:
            await hook()

    async def _run_phase(
        self, phase: Phase, routine: Callable[["CrawlLifecycle"], Awaitable[List[Any]]]
    ) -> None:
        run = self._run
        run.phase = phase
        self._transition(LifecycleState(phase.value))
        records = await routine(self)
        if not records:
            self.logger.warning("phase produced no records", phase=phase.value)
            return
        records = list(records)
        if not await self.storage.save_data(self.name, records, phase.value):
            raise PersistenceError(self.name, phase.value)
        run.records_produced += len(records)
        self.logger.info("phase saved", phase=phase.value, record_count=len(records))

    def _finish(self, run: CrawlRun, state: LifecycleState, error: Optional[str] = None) -> None:
        if run.ended_at is not None:
            return
        run.ended_at = time.time()
        run.state = state.value
        run.error = error
        self._last_run = run
        if self._run is run:
            self._run = None
        self._transition(state, error=error)
        if state is LifecycleState.COMPLETED:
            self.logger.info("run stopped early" if error else "run completed", **run.to_dict())
        else:
            self.logger.error("run failed", **run.to_dict())

    def _transition(self, state: LifecycleState, **fields: Any) -> None:
        previous, self._state = self._state, state
        self.logger.debug("state changed", previous=previous.value, state=state.value, **fields)

    # Request helpers for crawler routines.

    async def fetch_page(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        return await self._counted(self.dispatcher.fetch(url, options))

    async def fetch_page_rendered(self, url: str, options: Optional[RenderOptions] = None) -> FetchResult:
        return await self._counted(self.dispatcher.fetch_rendered(url, options))

    async def fetch_with_fallback(
        self,
        url: str,
        options: Optional[FetchOptions] = None,
        render_options: Optional[RenderOptions] = None,
        prefer: FetchMode = FetchMode.DIRECT,
    ) -> FetchResult:
        """Try one fetch mode, then the other if the first fails."""
        direct = lambda: self.fetch_page(url, options)  # noqa: E731
        rendered = lambda: self.fetch_page_rendered(url, render_options)  # noqa: E731
        first, second = (direct, rendered) if prefer is FetchMode.DIRECT else (rendered, direct)

        result = await first()
        if result.success:
            return result
        self.logger.warning(
            "fetch failed, falling back",
            url=url,
            from_mode=result.mode.value,
            error_type=result.error_type,
            error=result.error,
        )
        return await second()

    async def _counted(self, pending: Awaitable[FetchResult]) -> FetchResult:
        run = self._run
        if run is not None:
            run.requests_issued += 1
        result = await pending
        # Counters of a finished run stay frozen.
        if run is not None and run.ended_at is None:
            if result.success:
                run.requests_succeeded += 1
            else:
                run.requests_failed += 1
        return result

    async def process_batch(
        self,
        urls: Sequence[str],
        fn: Callable[[str], Awaitable[Any]],
        batch_size: int = 5,
        batch_delay: float = 1.0,
    ) -> List[Any]:
        """Run ``fn`` over ``urls`` in concurrent groups with a pause between groups.

        Each item yields a tagged outcome; failures are logged and left out.
        List values are flattened and empty values dropped.
        """
        batch_size = max(1, batch_size)
        total_batches = (len(urls) + batch_size - 1) // batch_size
        collected: List[Any] = []

        for index in range(0, len(urls), batch_size):
            if self._stop_requested:
                self.logger.info("stop requested, skipping remaining batches")
                break
            batch = urls[index:index + batch_size]
            self.logger.debug(
                "processing batch",
                batch_index=index // batch_size + 1,
                batch_size=len(batch),
                total_batches=total_batches,
            )
            items = await asyncio.gather(*(self._guarded(fn, url) for url in batch))
            for item in items:
                if item.ok:
                    collected.append(item.value)
                else:
                    self.logger.error("batch item failed", url=item.url, error=item.error)
            if index + batch_size < len(urls):
                await asyncio.sleep(batch_delay)

        flat: List[Any] = []
        for value in collected:
            if isinstance(value, list):
                flat.extend(v for v in value if v)
            elif value:
                flat.append(value)
        return flat

    @staticmethod
    async def _guarded(fn: Callable[[str], Awaitable[Any]], url: str) -> BatchItem:
        try:
            return BatchItem(url=url, ok=True, value=await fn(url))
        except Exception as exc:  # noqa: BLE001
            return BatchItem(url=url, ok=False, error=f"{type(exc).__name__}: {exc}")

    # Control.

    def stop(self) -> None:
        """Ask the running crawl to wind down cooperatively."""
        if self._run is not None:
            self.logger.info("stop requested")
            self._stop_requested = True

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._done.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def cleanup(self) -> None:
        self.stop()
        hook = getattr(self.crawler, "cleanup", None)
        if hook is not None:
            await hook()

    def status(self) -> dict:
        run = self._run or self._last_run
        return {
            "name": self.name,
            "state": self._state.value,
            "is_running": self.is_running,
            "stats": run.to_dict() if run else None,
        }
