from __future__ import annotations

import asyncio
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Sequence
from urllib.parse import urlsplit

from playwright.async_api import async_playwright

from .errors import RenderEngineError
from .log import get_logger

logger = get_logger(__name__)

LAUNCH_ARGS = (
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--no-first-run",
    "--no-default-browser-check",
)

BLOCKED_RESOURCES = frozenset({"image", "stylesheet", "font", "media"})

# Hides the most common automation fingerprints before any page script runs.
STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
window.chrome = { runtime: {} };
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications'
        ? Promise.resolve({ state: Notification.permission })
        : originalQuery(parameters)
);
"""


def random_viewport() -> Dict[str, int]:
    return {"width": 1366 + random.randint(0, 99), "height": 768 + random.randint(0, 99)}


def _proxy_settings(proxy: Optional[str]) -> Optional[Dict[str, str]]:
    if not proxy:
        return None
    parts = urlsplit(proxy)
    server = f"{parts.scheme}://{parts.hostname}" + (f":{parts.port}" if parts.port else "")
    settings = {"server": server}
    if parts.username:
        settings["username"] = parts.username
        settings["password"] = parts.password or ""
    return settings


async def _block_heavy_resources(route: Any) -> None:
    if route.request.resource_type in BLOCKED_RESOURCES:
        await route.abort()
    else:
        await route.continue_()


class RenderedSession:
    """One browser process shared by every rendered fetch.

    The browser is launched on first use. Each fetch gets its own browser
    context through page(), which is always closed when the fetch ends.
    close() waits for open contexts to be disposed before shutting the
    browser down."""

    def __init__(
        self,
        headless: bool = True,
        proxy: Optional[str] = None,
        launch_args: Sequence[str] = LAUNCH_ARGS,
    ) -> None:
        self._headless = headless
        self._proxy = proxy
        self._launch_args = list(launch_args)
        self._playwright = None
        self._browser = None
        self._start_lock = asyncio.Lock()
        self._cv = asyncio.Condition()
        self._open_pages = 0
        self._closed = False

    @property
    def active(self) -> bool:
        return self._browser is not None

    @property
    def open_pages(self) -> int:
        return self._open_pages

    async def start(self) -> None:
        async with self._start_lock:
            if self._closed:
                raise RenderEngineError("rendered session is closed")
            if self._browser is not None:
                return
            try:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self._headless,
                    args=self._launch_args,
                    proxy=_proxy_settings(self._proxy),
                )
            except Exception as exc:  # noqa: BLE001
                await self._stop_playwright()
                raise RenderEngineError(f"browser launch failed: {exc}") from exc
            logger.info("browser launched", headless=self._headless)

    @asynccontextmanager
    async def page(
        self,
        user_agent: str,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[Any]:
        await self.start()
        async with self._cv:
            if self._closed:
                raise RenderEngineError("rendered session is closed")
            self._open_pages += 1
        context = None
        try:
            context = await self._browser.new_context(
                user_agent=user_agent,
                viewport=random_viewport(),
                locale="en-US",
                extra_http_headers=extra_headers or {},
            )
            await context.add_init_script(STEALTH_SCRIPT)
            await context.route("**/*", _block_heavy_resources)
            yield await context.new_page()
        finally:
            try:
                if context is not None:
                    await context.close()
            finally:
                async with self._cv:
                    self._open_pages -= 1
                    self._cv.notify_all()

    async def close(self, timeout: Optional[float] = None) -> None:
        """Close the browser once every open page context is disposed."""
        async with self._cv:
            self._closed = True

        async def _drained() -> None:
            async with self._cv:
                await self._cv.wait_for(lambda: self._open_pages == 0)

        try:
            await asyncio.wait_for(_drained(), timeout)
        except asyncio.TimeoutError:
            logger.warning("closing browser with open pages", open_pages=self._open_pages)

        async with self._start_lock:
            browser, self._browser = self._browser, None
            if browser is not None:
                try:
                    await browser.close()
                finally:
                    await self._stop_playwright()
                logger.info("browser closed")
            else:
                await self._stop_playwright()

    async def _stop_playwright(self) -> None:
        pw, self._playwright = self._playwright, None
        if pw is not None:
            await pw.stop()
