from __future__ import annotations

import json
import logging
from typing import Any


class EventLogger:
    """Thin wrapper emitting one JSON object per event.

    ``logger.info("retry", url=url, attempt=2)`` logs
    ``{"event": "retry", "url": "...", "attempt": 2}``.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def child(self, suffix: str) -> "EventLogger":
        return EventLogger(self._logger.getChild(suffix))

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields)

    def _log(self, level: int, message: str, fields: dict) -> None:
        if not self._logger.isEnabledFor(level):
            return
        payload = {"event": message, **fields}
        self._logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def get_logger(name: str) -> EventLogger:
    return EventLogger(logging.getLogger(name))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
