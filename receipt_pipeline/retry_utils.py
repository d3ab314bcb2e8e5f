from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.25

    def delay_for_attempt(self, attempt: int) -> float:
        backoff = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        jitter = backoff * self.jitter_ratio * random.random()
        return backoff + jitter

    def should_retry(self, attempts: int, retryable: bool) -> bool:
        return retryable and attempts < self.max_attempts

    def next_delay(self, attempts: int, retry_after: float | None = None) -> float:
        delay = self.delay_for_attempt(max(attempts, 1))
        if retry_after is not None and retry_after > delay:
            return retry_after
        return delay
