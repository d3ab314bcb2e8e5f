from __future__ import annotations

from pydantic import BaseModel, Field


class LineItem(BaseModel):
    name: str = Field(min_length=1)
    quantity: float | None = Field(default=None, gt=0)
    price: int | None = Field(default=None, ge=0)


class ExpenseCandidate(BaseModel):
    """Best-effort extraction of one receipt, not yet confirmed by a person.

    Money fields are minor units (cents). Anything the normalizer could not
    recover is None rather than a guessed value.
    """

    merchant: str = ""
    amount: int | None = Field(default=None, ge=0)
    date: str | None = None
    time: str | None = None
    tax: int | None = Field(default=None, ge=0)
    tax_type: str | None = None
    tax_rate: float | None = Field(default=None, ge=0, le=100)
    subtotal: int | None = Field(default=None, ge=0)
    tip: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    category: str | None = None
    payment_method: str | None = None
    notes: str | None = None
    items: list[LineItem] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=1)
    flags: list[str] = Field(default_factory=list)


class ExpenseRecord(BaseModel):
    merchant: str = Field(min_length=1, max_length=100)
    amount: int = Field(gt=0)
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: str | None = None
    tax: int | None = Field(default=None, ge=0)
    tax_type: str | None = None
    tax_rate: float | None = Field(default=None, ge=0, le=100)
    subtotal: int | None = Field(default=None, ge=0)
    tip: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    category: str = "other"
    payment_method: str | None = None
    notes: str | None = Field(default=None, max_length=500)
    items: list[LineItem] = Field(default_factory=list)
    receipt_uri: str | None = None
    capture_method: str = "ai_service"
    ai_service_used: str | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)
