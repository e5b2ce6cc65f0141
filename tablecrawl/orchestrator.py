from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .config import Settings
from .dispatcher import FetchDispatcher
from .errors import RegistrationError
from .lifecycle import CrawlLifecycle, Crawler
from .log import get_logger
from .models import BatchReport, RunResult
from .storage import JsonFileStorage, Storage

logger = get_logger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
CLEANUP_CRON = "0 0 3 * * 0"


@runtime_checkable
class Scheduler(Protocol):
    """External cron-style scheduler. Callbacks are zero-argument coroutines."""

    def add_task(self, name: str, cron: str, callback: Callable[[], Awaitable[Any]]) -> bool:
        ...

    def remove_task(self, name: str) -> bool:
        ...


class CrawlOrchestrator:
    """Registry of crawler plugins sharing one dispatcher and one storage backend.

    Runs crawlers one at a time or all together and reports a RunResult per
    crawler; a failing crawler never aborts the rest of a batch.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        dispatcher: Optional[FetchDispatcher] = None,
        storage: Optional[Storage] = None,
    ) -> None:
        self._settings = settings or Settings()
        self._dispatcher = dispatcher
        self._storage = storage
        self._lifecycles: Dict[str, CrawlLifecycle] = {}
        self._scheduler: Optional[Scheduler] = None
        self._initialized = False
        self._closed = False

    @property
    def dispatcher(self) -> FetchDispatcher:
        if self._dispatcher is None:
            self._dispatcher = FetchDispatcher(self._settings)
        return self._dispatcher

    @property
    def storage(self) -> Storage:
        if self._storage is None:
            self._storage = JsonFileStorage(self._settings.data_path)
        return self._storage

    @property
    def crawler_names(self) -> List[str]:
        return list(self._lifecycles)

    @property
    def closed(self) -> bool:
        return self._closed

    async def initialize(self) -> None:
        """Build the shared dependencies and run every crawler's initialize hook."""
        if self._initialized:
            return
        _ = self.dispatcher, self.storage
        for name, lifecycle in self._lifecycles.items():
            hook = getattr(lifecycle.crawler, "initialize", None)
            if hook is None:
                continue
            try:
                await hook()
            except Exception as exc:  # noqa: BLE001
                logger.error("crawler initialize failed", crawler=name, error=str(exc))
        self._initialized = True
        logger.info("orchestrator initialized", crawlers=self.crawler_names)

    def register(self, crawler: Crawler) -> CrawlLifecycle:
        if self._closed:
            raise RegistrationError("orchestrator is shut down")
        name = getattr(crawler, "name", None)
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise RegistrationError(f"invalid crawler name: {name!r}", name=name)
        if not isinstance(crawler, Crawler):
            raise RegistrationError(
                f"crawler {name} must define crawl_historical and crawl_incremental", name=name
            )
        if name in self._lifecycles:
            raise RegistrationError(f"crawler {name} is already registered", name=name)

        lifecycle = CrawlLifecycle(crawler, self.dispatcher, self.storage)
        self._lifecycles[name] = lifecycle
        logger.info("crawler registered", crawler=name)
        return lifecycle

    async def unregister(self, name: str) -> bool:
        lifecycle = self._lifecycles.pop(name, None)
        if lifecycle is None:
            return False
        await self._cleanup(lifecycle)
        if self._scheduler is not None:
            self._scheduler.remove_task(f"daily_crawl_{name}")
            self._scheduler.remove_task(f"cleanup_{name}")
        logger.info("crawler unregistered", crawler=name)
        return True

    def get_crawler(self, name: str) -> Optional[CrawlLifecycle]:
        return self._lifecycles.get(name)

    async def run_one(self, name: str, force_historical: bool = False) -> bool:
        lifecycle = self._lifecycles.get(name)
        if lifecycle is None:
            logger.error("unknown crawler", crawler=name)
            return False
        try:
            return await lifecycle.run(force_historical=force_historical)
        except Exception as exc:  # noqa: BLE001
            logger.error("crawler run raised", crawler=name, error=str(exc))
            return False

    async def run_all(
        self,
        force_historical: bool = False,
        parallel: bool = False,
        names: Optional[Sequence[str]] = None,
    ) -> BatchReport:
        selected = list(names) if names is not None else self.crawler_names
        if not selected:
            logger.warning("no crawlers to run")
            return BatchReport(success=False, error="no crawlers registered")

        start = time.monotonic()
        logger.info("batch started", crawlers=selected, parallel=parallel)
        if parallel:
            outcomes = await asyncio.gather(
                *(self._run_isolated(name, force_historical) for name in selected),
                return_exceptions=True,
            )
            results = [
                o if isinstance(o, RunResult) else RunResult(name, False, f"{type(o).__name__}: {o}")
                for name, o in zip(selected, outcomes)
            ]
        else:
            results = []
            for name in selected:
                results.append(await self._run_isolated(name, force_historical))

        succeeded = sum(1 for r in results if r.success)
        stats = {
            "total": len(results),
            "success": succeeded,
            "failed": len(results) - succeeded,
            "duration_ms": int((time.monotonic() - start) * 1000),
        }
        logger.info("batch finished", **stats)
        return BatchReport(success=True, results=results, stats=stats)

    async def _run_isolated(self, name: str, force_historical: bool) -> RunResult:
        lifecycle = self._lifecycles.get(name)
        if lifecycle is None:
            return RunResult(name, False, "unknown crawler")
        try:
            ok = await lifecycle.run(force_historical=force_historical)
        except Exception as exc:  # noqa: BLE001
            return RunResult(name, False, f"{type(exc).__name__}: {exc}")
        if ok:
            return RunResult(name, True)
        error = lifecycle.last_error if not lifecycle.is_running else "already running"
        return RunResult(name, False, error or "run rejected")

    def setup_schedule(
        self,
        scheduler: Scheduler,
        name: Optional[str] = None,
        cron: Optional[str] = None,
    ) -> bool:
        """Register daily crawl and weekly cleanup tasks with ``scheduler``."""
        self._scheduler = scheduler
        cron = cron or self._settings.daily_cron
        targets = [name] if name is not None else self.crawler_names
        ok = True
        for target in targets:
            if target not in self._lifecycles:
                logger.error("cannot schedule unknown crawler", crawler=target)
                ok = False
                continue
            added = scheduler.add_task(f"daily_crawl_{target}", cron, self._scheduled_run(target))
            cleanup = getattr(self.storage, "cleanup_old_data", None)
            if cleanup is not None:
                scheduler.add_task(f"cleanup_{target}", CLEANUP_CRON, self._scheduled_cleanup(target))
            logger.info("crawler scheduled", crawler=target, cron=cron, added=bool(added))
            ok = ok and bool(added)
        return ok

    def _scheduled_run(self, name: str) -> Callable[[], Awaitable[bool]]:
        async def _callback() -> bool:
            return await self.run_one(name)

        return _callback

    def _scheduled_cleanup(self, name: str) -> Callable[[], Awaitable[Any]]:
        async def _callback() -> Any:
            return await self.storage.cleanup_old_data(name)

        return _callback

    def status(self) -> Dict[str, Any]:
        crawlers = {name: lc.status() for name, lc in self._lifecycles.items()}
        return {
            "initialized": self._initialized,
            "closed": self._closed,
            "total_crawlers": len(crawlers),
            "running_crawlers": sum(1 for c in crawlers.values() if c["is_running"]),
            "crawlers": crawlers,
            "dispatcher": self._dispatcher.get_stats() if self._dispatcher is not None else None,
        }

    async def detailed_status(self) -> Dict[str, Any]:
        status = self.status()
        get_stats = getattr(self.storage, "get_stats", None)
        if get_stats is not None:
            for name, entry in status["crawlers"].items():
                entry["storage"] = await get_stats(name)
        return status

    def stop_all(self) -> None:
        for lifecycle in self._lifecycles.values():
            lifecycle.stop()

    async def shutdown(self, deadline: Optional[float] = None) -> None:
        """Stop running crawlers, close the dispatcher, drop registrations.

        Crawlers get ``deadline`` seconds to finish on their own before they
        are cancelled. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        deadline = self._settings.shutdown_deadline if deadline is None else deadline
        logger.info("orchestrator shutting down", crawlers=self.crawler_names)

        self.stop_all()
        running = [lc for lc in self._lifecycles.values() if lc.is_running]
        if self._dispatcher is not None:
            await self._dispatcher.shutdown(deadline)
        for lifecycle in running:
            if not await lifecycle.wait_stopped(deadline):
                logger.warning("crawler did not stop in time, cancelling", crawler=lifecycle.name)
                lifecycle.cancel()
                await lifecycle.wait_stopped(deadline)

        for lifecycle in list(self._lifecycles.values()):
            await self._cleanup(lifecycle)
        self._lifecycles.clear()
        logger.info("orchestrator shut down")

    @staticmethod
    async def _cleanup(lifecycle: CrawlLifecycle) -> None:
        try:
            await lifecycle.cleanup()
        except Exception as exc:  # noqa: BLE001
            logger.error("crawler cleanup failed", crawler=lifecycle.name, error=str(exc))
