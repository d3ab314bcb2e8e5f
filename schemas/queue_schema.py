from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from schemas.expense_schema import ExpenseCandidate

QueueStatus = Literal["pending", "processing", "completed", "failed"]
QueuePriority = Literal["immediate", "background"]
ErrorKind = Literal[
    "unknown_provider",
    "auth_error",
    "rate_limited",
    "network_error",
    "provider_error",
    "malformed_response",
    "no_structured_data",
    "invalid_syntax",
    "image_unavailable",
    "pipeline_error",
]


class QueueError(BaseModel):
    kind: ErrorKind
    message: str = Field(min_length=1)
    detail: str | None = None
    retryable: bool = False


class QueueItem(BaseModel):
    id: str = Field(min_length=1)
    image_uri: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    priority: QueuePriority = "background"
    status: QueueStatus = "pending"
    result: ExpenseCandidate | None = None
    error: QueueError | None = None
    attempts: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _check_outcome_matches_status(self) -> "QueueItem":
        if self.status == "completed":
            if self.result is None or self.error is not None:
                raise ValueError("completed items carry a result and no error")
        elif self.status == "failed":
            if self.error is None or self.result is not None:
                raise ValueError("failed items carry an error and no result")
        elif self.result is not None or self.error is not None:
            raise ValueError(f"{self.status} items carry neither result nor error")
        return self
