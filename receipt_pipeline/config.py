from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from receipt_pipeline.providers import is_known_provider, list_providers


def _parse_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _parse_float(name: str, default: float, *, minimum: float = 0.0, maximum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}")
    return value


@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    queue_db_path: str = "data/queue.db"
    expense_db_path: str = "data/expenses.db"
    metrics_path: str = "logs/metrics.jsonl"
    default_provider: str = "anthropic"
    max_concurrent: int = 2
    max_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 30.0
    processing_timeout_seconds: float = 60.0
    request_timeout_seconds: float = 45.0
    openai_model: str = "gpt-4o"
    anthropic_model: str = "claude-sonnet-4-20250514"
    gemini_model: str = "gemini-2.0-flash"
    extraction_max_tokens: int = 1000
    extraction_temperature: float = 0.1
    review_confidence_threshold: float = 0.5

    @classmethod
    def from_env(cls) -> "Settings":
        default_provider = os.getenv("DEFAULT_PROVIDER", "anthropic").strip().lower()
        if not is_known_provider(default_provider):
            known = ", ".join(descriptor.id for descriptor in list_providers())
            raise ValueError(f"DEFAULT_PROVIDER must be one of: {known}")

        base_delay = _parse_float("RETRY_BASE_DELAY_SECONDS", 2.0)
        max_delay = _parse_float("RETRY_MAX_DELAY_SECONDS", 30.0)
        if max_delay < base_delay:
            raise ValueError("RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS")

        processing_timeout = _parse_float("PROCESSING_TIMEOUT_SECONDS", 60.0, minimum=1.0)
        request_timeout = _parse_float("REQUEST_TIMEOUT_SECONDS", 45.0, minimum=1.0)

        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            queue_db_path=os.getenv("QUEUE_DB_PATH", "data/queue.db"),
            expense_db_path=os.getenv("EXPENSE_DB_PATH", "data/expenses.db"),
            metrics_path=os.getenv("METRICS_PATH", "logs/metrics.jsonl"),
            default_provider=default_provider,
            max_concurrent=_parse_int("MAX_CONCURRENT", 2),
            max_attempts=_parse_int("MAX_ATTEMPTS", 3),
            retry_base_delay_seconds=base_delay,
            retry_max_delay_seconds=max_delay,
            processing_timeout_seconds=processing_timeout,
            request_timeout_seconds=request_timeout,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            extraction_max_tokens=_parse_int("EXTRACTION_MAX_TOKENS", 1000),
            extraction_temperature=_parse_float("EXTRACTION_TEMPERATURE", 0.1, maximum=2.0),
            review_confidence_threshold=_parse_float(
                "REVIEW_CONFIDENCE_THRESHOLD", 0.5, maximum=1.0
            ),
        )


def load_dotenv(path: str | Path = ".env") -> None:
    env_path = Path(path)
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        os.environ.setdefault(key, value)
