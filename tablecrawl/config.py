from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv


def _ms(raw: Optional[str], default: float) -> float:
    """Environment delays and timeouts are given in milliseconds."""
    if raw is None or raw.strip() == "":
        return default
    return int(raw) / 1000.0


def _int(raw: Optional[str], default: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _float(raw: Optional[str], default: float) -> float:
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime settings. Durations are in seconds."""

    data_path: str = "./data"
    log_level: str = "INFO"

    min_delay: float = 1.0
    max_delay: float = 3.0
    concurrency_limit: int = 3
    request_timeout: float = 30.0
    retries: int = 3
    base_backoff: float = 1.0

    rotate_identity: bool = False
    proxy: Optional[str] = None
    headless: bool = True

    daily_cron: str = "0 0 8 * * *"
    shutdown_deadline: float = 30.0

    def __post_init__(self) -> None:
        if self.min_delay < 0 or self.max_delay < self.min_delay:
            raise ValueError(
                f"invalid pacing window: min_delay={self.min_delay} max_delay={self.max_delay}"
            )
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if self.retries < 1:
            raise ValueError("retries must be >= 1")

    @classmethod
    def from_env(
        cls,
        env_file: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """Build settings from ``.env`` and the process environment."""
        if environ is None:
            env_path = Path(env_file) if env_file else Path.cwd() / ".env"
            if env_path.exists():
                load_dotenv(dotenv_path=env_path)
            environ = os.environ
        get = environ.get

        return cls(
            data_path=get("DATA_PATH") or cls.data_path,
            log_level=(get("LOG_LEVEL") or cls.log_level).upper(),
            min_delay=_ms(get("MIN_DELAY"), cls.min_delay),
            max_delay=_ms(get("MAX_DELAY"), cls.max_delay),
            concurrency_limit=_int(get("CONCURRENT_LIMIT"), cls.concurrency_limit),
            request_timeout=_ms(get("REQUEST_TIMEOUT"), cls.request_timeout),
            retries=_int(get("REQUEST_RETRIES"), cls.retries),
            base_backoff=_ms(get("REQUEST_BACKOFF"), cls.base_backoff),
            rotate_identity=_bool(get("ROTATE_USER_AGENT"), cls.rotate_identity),
            proxy=_proxy_url(get),
            headless=_bool(get("HEADLESS"), cls.headless),
            daily_cron=get("DAILY_CRON") or cls.daily_cron,
            shutdown_deadline=_float(get("SHUTDOWN_DEADLINE"), cls.shutdown_deadline),
        )

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with the non-None keyword arguments applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _proxy_url(get) -> Optional[str]:
    host = get("PROXY_HOST")
    if not host:
        return None
    port = get("PROXY_PORT")
    user = get("PROXY_USERNAME")
    password = get("PROXY_PASSWORD")
    auth = f"{user}:{password}@" if user and password else ""
    netloc = f"{host}:{port}" if port else host
    return f"http://{auth}{netloc}"
