from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

_EVENT_FIELDS = (
    "item_id",
    "provider",
    "state",
    "stage",
    "attempt",
    "latency_ms",
    "outcome",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field_name in _EVENT_FIELDS:
            if hasattr(record, field_name):
                payload[field_name] = getattr(record, field_name)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    if root.handlers:
        for handler in root.handlers:
            handler.setFormatter(JsonFormatter())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)


def log_item_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    item_id: str,
    provider: str | None = None,
    state: str | None = None,
    stage: str | None = None,
    attempt: int | None = None,
    latency_ms: int | None = None,
    outcome: str | None = None,
) -> None:
    extra: dict[str, Any] = {"item_id": item_id}
    if provider is not None:
        extra["provider"] = provider
    if state is not None:
        extra["state"] = state
    if stage is not None:
        extra["stage"] = stage
    if attempt is not None:
        extra["attempt"] = attempt
    if latency_ms is not None:
        extra["latency_ms"] = latency_ms
    if outcome is not None:
        extra["outcome"] = outcome
    logger.log(level, message, extra=extra)
