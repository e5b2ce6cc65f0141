from __future__ import annotations

import asyncio
import time
from dataclasses import asdict
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from curl_cffi.requests import AsyncSession

from .backoff import BackoffStrategy
from .config import Settings
from .errors import (
    RETRYABLE_ERRORS,
    CrawlError,
    DispatcherClosed,
    HTTPStatusError,
    ParseError,
    RenderEngineError,
    TransportError,
)
from .identity import ROTATING, STATIC, IdentityRotator
from .log import get_logger
from .metrics import MetricsCollector
from .models import FetchMode, FetchOptions, FetchResult, PageState, RenderOptions, RequestTask
from .pacing import PacingGate
from .readiness import wait_until_ready
from .rendered import RenderedSession
from .slots import DispatchSlots

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Cache-Control": "max-age=0",
    "DNT": "1",
}


def domain_of(url: str) -> str:
    host = urlsplit(url).hostname
    if not host:
        raise ValueError(f"URL has no host: {url!r}")
    return host


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def parse_document(content: Optional[str]) -> BeautifulSoup:
    if content is None or not content.strip():
        raise ParseError("empty document")
    try:
        return BeautifulSoup(content, "lxml")
    except Exception as exc:  # noqa: BLE001
        raise ParseError(f"{type(exc).__name__}: {exc}") from exc


async def _page_state(page: Any) -> PageState:
    # A challenge wall navigating away mid-poll destroys the execution
    # context; report an empty snapshot so polling carries on.
    try:
        return PageState(url=page.url, title=await page.title(), html=await page.content())
    except Exception as exc:  # noqa: BLE001
        logger.debug("page snapshot unavailable", error=str(exc))
        return PageState(url=page.url, title="", html="")


class FetchDispatcher:
    """Concurrency-bounded executor for direct and rendered fetches.

    Every call takes a dispatch slot first, then waits for the target
    domain's pacing slot, then performs the network or render operation.
    Rendered fetches wait for pacing only once the browser page is ready,
    so the gap is measured between navigations.
    Failures never raise: they come back as FetchResult objects whose
    error_type names the cause (TransportError, HTTPStatusError, ParseError,
    RenderEngineError, DispatcherClosed).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        pacing: Optional[PacingGate] = None,
        identity: Optional[IdentityRotator] = None,
        backoff: Optional[BackoffStrategy] = None,
        metrics: Optional[MetricsCollector] = None,
        http_client: Optional[Any] = None,
        rendered_session: Optional[RenderedSession] = None,
    ) -> None:
        self._settings = settings or Settings()
        s = self._settings
        self._pacing = pacing or PacingGate(s.min_delay, s.max_delay)
        self._identity = identity or IdentityRotator(ROTATING if s.rotate_identity else STATIC)
        self._backoff = backoff or BackoffStrategy(base_seconds=s.base_backoff)
        self._metrics = metrics or MetricsCollector()
        self._slots = DispatchSlots(s.concurrency_limit)
        self._retries = s.retries
        self._timeout = s.request_timeout

        self._http = http_client
        self._owns_http = http_client is None
        self._session = rendered_session
        self._session_lock = asyncio.Lock()
        self._closed = False

    @property
    def pacing(self) -> PacingGate:
        return self._pacing

    @property
    def identity(self) -> IdentityRotator:
        return self._identity

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def slots(self) -> DispatchSlots:
        return self._slots

    @property
    def closed(self) -> bool:
        return self._closed

    async def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        """Direct fetch with retries; parses the body on success."""
        options = options or FetchOptions()
        task = RequestTask(url=url, mode=FetchMode.DIRECT, method=options.method)
        start = time.monotonic()
        try:
            domain = domain_of(url)
        except ValueError as exc:
            return self._record(FetchResult.failure(url, task.mode, exc, attempts=0))

        if not await self._slots.acquire():
            closed = DispatcherClosed("dispatcher is shut down")
            return self._record(FetchResult.failure(url, task.mode, closed, attempts=0))
        try:
            result = await self._fetch_direct(task, domain, options, start)
        finally:
            await self._slots.release()
        return self._record(result)

    async def fetch_rendered(self, url: str, options: Optional[RenderOptions] = None) -> FetchResult:
        """Rendered fetch through the shared browser session.

        With a readiness check, the page is polled until the predicate holds;
        if it never does, whatever content is present at max_wait is returned
        as a success with ``ready=False``. Non-2xx navigation statuses only fail
        the fetch when no readiness check is given, since challenge walls
        answer 403/503 before resolving to the real page.
        """
        options = options or RenderOptions()
        task = RequestTask(url=url, mode=FetchMode.RENDERED, attempt=1)
        start = time.monotonic()
        try:
            domain = domain_of(url)
        except ValueError as exc:
            return self._record(FetchResult.failure(url, task.mode, exc, attempts=0))

        if not await self._slots.acquire():
            closed = DispatcherClosed("dispatcher is shut down")
            return self._record(FetchResult.failure(url, task.mode, closed, attempts=0))
        try:
            result = await self._render(task, domain, options, start)
        finally:
            await self._slots.release()
        return self._record(result)

    async def _fetch_direct(
        self, task: RequestTask, domain: str, options: FetchOptions, start: float
    ) -> FetchResult:
        last_exc: Optional[CrawlError] = None
        while task.attempt < self._retries:
            task.attempt += 1
            await self._pacing.wait_for_slot(domain)
            logger.debug("sending request", url=task.url, attempt=task.attempt, retries=self._retries)
            try:
                response = await self._send(task, options)
                status = int(response.status_code)
                if not 200 <= status < 300:
                    raise HTTPStatusError(status, task.url)
            except RETRYABLE_ERRORS as exc:
                last_exc = exc
                logger.warning(
                    "request attempt failed",
                    url=task.url,
                    attempt=task.attempt,
                    retries=self._retries,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if task.attempt < self._retries:
                    await asyncio.sleep(self._backoff.get_sleep(task.attempt, type(exc).__name__))
                continue

            content = response.text
            try:
                document = parse_document(content)
            except ParseError as exc:
                logger.error("document parse failed", url=task.url, error=str(exc))
                return FetchResult.failure(
                    task.url, task.mode, exc,
                    attempts=task.attempt, latency_ms=_elapsed_ms(start), status_code=status,
                )
            logger.info("request succeeded", url=task.url, status=status, content_length=len(content))
            return FetchResult(
                url=str(getattr(response, "url", None) or task.url),
                success=True,
                mode=task.mode,
                status_code=status,
                content=content,
                document=document,
                attempts=task.attempt,
                latency_ms=_elapsed_ms(start),
            )

        logger.error("request failed", url=task.url, attempts=task.attempt, error=str(last_exc))
        return FetchResult.failure(
            task.url, task.mode, last_exc, attempts=task.attempt, latency_ms=_elapsed_ms(start)
        )

    async def _send(self, task: RequestTask, options: FetchOptions) -> Any:
        client = await self._client()
        task.headers = {
            **DEFAULT_HEADERS,
            "User-Agent": self._identity.next_identity(),
            "Referer": origin_of(task.url),
            **options.headers,
        }
        try:
            return await client.request(
                task.method,
                task.url,
                headers=task.headers,
                params=options.params,
                data=options.data,
                json=options.json,
                timeout=options.timeout or self._timeout,
            )
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

    async def _render(
        self, task: RequestTask, domain: str, options: RenderOptions, start: float
    ) -> FetchResult:
        ready: Optional[bool] = None
        try:
            session = await self._rendered_session()
            async with session.page(self._identity.next_identity(), options.headers or None) as page:
                # Browser launch and context setup can take seconds; stamp the
                # domain only when navigation is about to start.
                await self._pacing.wait_for_slot(domain)
                logger.debug("rendering page", url=task.url)
                try:
                    response = await page.goto(
                        task.url,
                        wait_until=options.wait_until,
                        timeout=(options.timeout or self._timeout) * 1000,
                    )
                except Exception as exc:  # noqa: BLE001
                    raise RenderEngineError(f"navigation failed: {exc}") from exc
                status = response.status if response is not None else None

                if options.readiness is not None:
                    ready, state = await wait_until_ready(lambda: _page_state(page), options.readiness)
                    if not ready:
                        logger.warning(
                            "readiness wait timed out, using partial content",
                            url=task.url,
                            max_wait=options.readiness.max_wait,
                        )
                    content = state.html
                else:
                    if status is not None and not 200 <= status < 300:
                        raise HTTPStatusError(status, task.url)
                    content = await page.content()
                final_url = page.url or task.url
        except CrawlError as exc:
            logger.error("rendered fetch failed", url=task.url, error_type=type(exc).__name__, error=str(exc))
            return FetchResult.failure(task.url, task.mode, exc, latency_ms=_elapsed_ms(start))
        except Exception as exc:  # noqa: BLE001
            logger.error("rendered fetch failed", url=task.url, error=str(exc))
            wrapped = RenderEngineError(f"{type(exc).__name__}: {exc}")
            return FetchResult.failure(task.url, task.mode, wrapped, latency_ms=_elapsed_ms(start))

        try:
            document = parse_document(content)
        except ParseError as exc:
            logger.error("document parse failed", url=task.url, error=str(exc))
            return FetchResult.failure(
                task.url, task.mode, exc, latency_ms=_elapsed_ms(start), status_code=status
            )
        logger.info("rendered fetch succeeded", url=task.url, status=status, ready=ready, content_length=len(content))
        return FetchResult(
            url=final_url,
            success=True,
            mode=task.mode,
            status_code=status,
            content=content,
            document=document,
            latency_ms=_elapsed_ms(start),
            ready=ready,
        )

    async def _client(self) -> Any:
        if self._http is None:
            proxy = self._settings.proxy
            self._http = AsyncSession(
                impersonate="chrome",
                proxies={"http": proxy, "https": proxy} if proxy else None,
            )
        return self._http

    async def _rendered_session(self) -> RenderedSession:
        async with self._session_lock:
            if self._session is None:
                self._session = RenderedSession(
                    headless=self._settings.headless, proxy=self._settings.proxy
                )
            return self._session

    def _record(self, result: FetchResult) -> FetchResult:
        self._metrics.record_result(result)
        return result

    def get_stats(self, window_secs: int = 300) -> Dict[str, Any]:
        return {
            "active_domains": self._pacing.active_domains,
            "concurrency_limit": self._slots.limit,
            "in_flight": self._slots.active,
            "browser_active": bool(self._session is not None and self._session.active),
            "closed": self._closed,
            "metrics": asdict(self._metrics.snapshot(window_secs)),
        }

    def reset(self) -> None:
        self._pacing.clear_all()
        self._identity.reset()

    async def shutdown(self, deadline: Optional[float] = None) -> None:
        """Stop admitting requests, let in-flight ones finish, release resources.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        deadline = self._settings.shutdown_deadline if deadline is None else deadline

        await self._slots.stop()
        if not await self._slots.wait_idle(deadline):
            logger.warning("requests still in flight at shutdown deadline", in_flight=self._slots.active)

        if self._session is not None:
            await self._session.close(timeout=deadline)
        if self._http is not None and self._owns_http:
            http, self._http = self._http, None
            await http.close()
        self.reset()
        logger.info("dispatcher shut down")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
