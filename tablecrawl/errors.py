from __future__ import annotations

from typing import Optional


class CrawlError(Exception):
    """Base class for errors raised inside the fetch and crawl pipeline."""


class TransportError(CrawlError):
    """Network, DNS or timeout failure. Retried by the dispatcher."""


class HTTPStatusError(CrawlError):
    """Server answered with a non-2xx status. Retried up to the limit."""

    def __init__(self, status_code: int, url: str) -> None:
        super().__init__(f"HTTP {status_code} for {url}")
        self.status_code = status_code
        self.url = url


class ParseError(CrawlError):
    """Response body could not be turned into a document. Not retried."""


class RenderEngineError(CrawlError):
    """Browser launch or navigation failed in rendered mode."""


class PersistenceError(CrawlError):
    """Storage refused to save a phase's records."""

    def __init__(self, crawler_name: str, phase: str) -> None:
        super().__init__(f"failed to save {phase} data for {crawler_name}")
        self.crawler_name = crawler_name
        self.phase = phase


class RegistrationError(CrawlError):
    """A crawler could not be registered with the orchestrator."""

    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(message)
        self.name = name


class DispatcherClosed(CrawlError):
    """The dispatcher no longer admits requests."""


RETRYABLE_ERRORS = (TransportError, HTTPStatusError)
