from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .readiness import ReadinessCheck


class FetchMode(str, Enum):
    DIRECT = "direct"
    RENDERED = "rendered"


class Phase(str, Enum):
    HISTORICAL = "historical"
    INCREMENTAL = "incremental"


@dataclass
class RequestTask:
    url: str
    mode: FetchMode = FetchMode.DIRECT
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    attempt: int = 0


@dataclass(frozen=True)
class FetchOptions:
    """Per-call options for a direct fetch."""

    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    data: Optional[Any] = None
    json: Optional[Any] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class RenderOptions:
    """Per-call options for a rendered fetch.

    ``readiness`` is polled host-side after navigation; without it the page is
    snapshotted as soon as ``wait_until`` is reached.
    """

    wait_until: str = "networkidle"
    timeout: Optional[float] = None
    headers: Dict[str, str] = field(default_factory=dict)
    readiness: Optional["ReadinessCheck"] = None


@dataclass(frozen=True)
class PageState:
    url: str
    title: str
    html: str


@dataclass(frozen=True)
class FetchResult:
    url: str
    success: bool
    mode: FetchMode
    status_code: Optional[int] = None
    content: Optional[str] = None
    document: Optional[Any] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 1
    latency_ms: int = 0
    ready: Optional[bool] = None

    @classmethod
    def failure(
        cls,
        url: str,
        mode: FetchMode,
        exc: BaseException,
        attempts: int = 1,
        latency_ms: int = 0,
        status_code: Optional[int] = None,
    ) -> "FetchResult":
        return cls(
            url=url,
            success=False,
            mode=mode,
            status_code=status_code if status_code is not None else getattr(exc, "status_code", None),
            error=str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
            attempts=attempts,
            latency_ms=latency_ms,
        )


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_requests: int
    success_count: int
    transport_error_count: int
    render_error_count: int
    http_429_count: int
    http_403_count: int
    not_ready_count: int
    avg_latency_ms: float
    timestamp: float


@dataclass
class CrawlRun:
    """Counters for one live run of a crawler."""

    crawler_name: str
    started_at: float = field(default_factory=time.time)
    phase: Optional[Phase] = None
    ended_at: Optional[float] = None
    state: str = "initializing"
    requests_issued: int = 0
    requests_succeeded: int = 0
    requests_failed: int = 0
    records_produced: int = 0
    error: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at) * 1000)

    @property
    def success_rate(self) -> str:
        if self.requests_issued == 0:
            return "0%"
        return f"{self.requests_succeeded / self.requests_issued * 100:.2f}%"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value if self.phase else None
        d["duration_ms"] = self.duration_ms
        d["success_rate"] = self.success_rate
        return d


@dataclass(frozen=True)
class RunResult:
    name: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BatchReport:
    success: bool
    results: List[RunResult] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "stats": dict(self.stats),
            "error": self.error,
        }
