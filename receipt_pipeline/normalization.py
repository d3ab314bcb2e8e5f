from __future__ import annotations

import json
import math
import re
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Final, Protocol

from receipt_pipeline.extraction_service import MalformedResponseError
from receipt_pipeline.providers import get_provider
from receipt_pipeline.validation import evaluate_business_rules
from schemas.expense_schema import ExpenseCandidate, LineItem

CONFIDENCE_PENALTY: Final[float] = 0.15
EXPECTED_FIELDS: Final[tuple[str, ...]] = ("merchant", "amount", "date", "tax")
FUTURE_DATE_TOLERANCE: Final[timedelta] = timedelta(days=1)
MONEY_FIELDS: Final[tuple[str, ...]] = ("amount", "tax", "subtotal", "tip")

FIELD_ALIASES: Final[dict[str, tuple[str, ...]]] = {
    "merchant": ("merchant", "merchant_name", "vendor", "vendor_name", "store"),
    "amount": ("amount", "total", "total_amount", "grand_total"),
    "tax": ("tax", "tax_amount", "vat"),
    "tax_type": ("taxType", "tax_type"),
    "tax_rate": ("taxRate", "tax_rate"),
    "subtotal": ("subtotal", "sub_total", "subtotal_amount"),
    "tip": ("tip", "tip_amount", "gratuity"),
    "date": ("date", "transaction_date", "receipt_date"),
    "time": ("time", "transaction_time"),
    "currency": ("currency", "currency_code"),
    "category": ("category",),
    "payment_method": ("paymentMethod", "payment_method"),
    "items": ("items", "line_items"),
    "confidence": ("confidence", "confidence_score"),
    "notes": ("notes",),
}

CATEGORY_KEYWORDS: Final[dict[str, set[str]]] = {
    "meal": {"meal", "food", "restaurant", "dining", "cafe", "coffee", "grocery", "groceries", "lunch", "dinner"},
    "transport": {"transport", "travel", "taxi", "uber", "lyft", "flight", "airline", "fuel", "gas", "parking", "train"},
    "accommodation": {"accommodation", "hotel", "lodging", "airbnb", "motel"},
    "office": {"office", "supplies", "stationery", "software", "printing", "equipment"},
}

TAX_TYPES: Final[set[str]] = {"VAT", "GST", "HST", "PST", "SALES_TAX", "SERVICE_TAX"}

PAYMENT_METHOD_KEYWORDS: Final[dict[str, tuple[str, ...]]] = {
    "card": ("card", "credit", "debit", "visa", "mastercard", "amex"),
    "cash": ("cash",),
    "bank": ("bank", "transfer"),
}

_DATE_FORMATS: Final[tuple[str, ...]] = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_+-]*)[ \t]*\r?\n?(.*?)```", re.DOTALL)
_ISO_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_MONEY_NOISE_RE = re.compile(r"[^0-9.,\-]")
_DECIMAL_COMMA_RE = re.compile(r",\d{2}$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?$")


class NormalizationError(ValueError):
    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = kind


class EnvelopeAdapter(Protocol):
    def extract_text(self, raw: dict[str, Any]) -> str:
        """Pull the model's answer text out of a provider response envelope."""


def _malformed(provider_name: str, what: str) -> MalformedResponseError:
    return MalformedResponseError(f"{provider_name} response has no {what}", code="invalid_envelope")


def _join_text_parts(parts: list[Any]) -> str:
    texts = [part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
    return "\n".join(texts)


class OpenAIChatEnvelope:
    def extract_text(self, raw: dict[str, Any]) -> str:
        choices = raw.get("choices") if isinstance(raw, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise _malformed("OpenAI", "choices")
        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return _join_text_parts(content)
        raise _malformed("OpenAI", "message content")


class AnthropicMessagesEnvelope:
    def extract_text(self, raw: dict[str, Any]) -> str:
        blocks = raw.get("content") if isinstance(raw, dict) else None
        if not isinstance(blocks, list) or not blocks:
            raise _malformed("Anthropic", "content blocks")
        text_blocks = [block for block in blocks if isinstance(block, dict) and block.get("type") == "text"]
        if not text_blocks:
            raise _malformed("Anthropic", "text content block")
        return _join_text_parts(text_blocks)


class GeminiGenerateEnvelope:
    def extract_text(self, raw: dict[str, Any]) -> str:
        candidates = raw.get("candidates") if isinstance(raw, dict) else None
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            raise _malformed("Gemini", "candidates")
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list) or not parts:
            raise _malformed("Gemini", "content parts")
        return _join_text_parts(parts)


DEFAULT_ENVELOPES: Final[dict[str, EnvelopeAdapter]] = {
    "openai_chat": OpenAIChatEnvelope(),
    "anthropic_messages": AnthropicMessagesEnvelope(),
    "gemini_generate": GeminiGenerateEnvelope(),
}


def _first_object(bodies: list[str]) -> tuple[dict[str, Any] | None, bool]:
    saw_syntax_error = False
    for body in bodies:
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            saw_syntax_error = True
            continue
        if isinstance(parsed, dict):
            return parsed, saw_syntax_error
    return None, saw_syntax_error


def find_structured_block(text: str) -> dict[str, Any]:
    """Locate the JSON object a model embedded in its answer.

    Search order: fenced blocks tagged ``json`` (first one that parses wins),
    untagged fenced blocks, the whole text, then the first embedded object
    starting at the first brace.
    """
    stripped = (text or "").strip()
    if not stripped:
        raise NormalizationError("no_structured_data", "Response contained no text")

    fences = _FENCE_RE.findall(stripped)
    tagged = [body for tag, body in fences if tag.lower() == "json"]
    if tagged:
        parsed, _ = _first_object(tagged)
        if parsed is not None:
            return parsed
        raise NormalizationError("invalid_syntax", "Fenced JSON block could not be parsed")

    untagged = [body for tag, body in fences if not tag]
    parsed, _ = _first_object(untagged)
    if parsed is not None:
        return parsed

    parsed, whole_text_error = _first_object([stripped])
    if parsed is not None:
        return parsed

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start != -1 and end > start:
        try:
            leading, _ = json.JSONDecoder().raw_decode(stripped, start)
        except json.JSONDecodeError:
            leading = None
        if isinstance(leading, dict):
            return leading
        raise NormalizationError("invalid_syntax", "Embedded JSON object could not be parsed")
    if whole_text_error and stripped.startswith("{"):
        raise NormalizationError("invalid_syntax", "Response JSON could not be parsed")
    raise NormalizationError("no_structured_data", "No structured receipt data found in response")


def _pick(data: dict[str, Any], field_name: str) -> Any:
    for alias in FIELD_ALIASES.get(field_name, (field_name,)):
        value = data.get(alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def to_cents(value: Any) -> tuple[int | None, str | None]:
    """Return (cents, problem) where problem is None, "invalid" or "negative"."""
    if value is None:
        return None, None
    if isinstance(value, bool):
        return None, "invalid"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None, "invalid"
        number = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = _MONEY_NOISE_RE.sub("", value.strip())
        if _DECIMAL_COMMA_RE.search(cleaned):
            # "12,50" and "1.234,50": the trailing comma is the decimal point.
            head, _, tail = cleaned.rpartition(",")
            cleaned = head.replace(".", "").replace(",", "") + "." + tail
        else:
            cleaned = cleaned.replace(",", "")
        if not cleaned:
            return None, "invalid"
        try:
            number = Decimal(cleaned)
        except InvalidOperation:
            return None, "invalid"
    else:
        return None, "invalid"
    if number < 0:
        return None, "negative"
    return int((number * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)), None


def parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if _ISO_PREFIX_RE.match(text):
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_time(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    match = _TIME_RE.match(value.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    seconds = int(match.group(3) or 0)
    meridiem = (match.group(4) or "").lower()
    if meridiem == "pm" and hours < 12:
        hours += 12
    elif meridiem == "am" and hours == 12:
        hours = 0
    if hours > 23 or minutes > 59 or seconds > 59:
        return None
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def normalize_merchant(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("name")
    if value is None or isinstance(value, (list, dict, bool)):
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()[:100]


def normalize_category(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    lowered = value.strip().lower()
    if lowered in CATEGORY_KEYWORDS or lowered == "other":
        return lowered
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return "other"


def normalize_tax_type(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    normalized = re.sub(r"\s+", "_", value.strip().upper())
    return normalized if normalized in TAX_TYPES else "OTHER"


def normalize_payment_method(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.lower()
    for canonical, keywords in PAYMENT_METHOD_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return canonical
    return "other"


def _normalize_currency(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    code = value.strip().upper()
    return code if len(code) == 3 and code.isalpha() else None


def _normalize_tax_rate(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(rate) or rate < 0 or rate > 100:
        return None
    return round(rate, 2)


def _normalize_items(raw: Any) -> list[LineItem]:
    if not isinstance(raw, list):
        return []
    items: list[LineItem] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        name = normalize_merchant(entry.get("name") or entry.get("description") or entry.get("title"))
        if not name:
            continue
        quantity = entry.get("quantity", entry.get("qty"))
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)):
            quantity = None
        elif not math.isfinite(quantity) or quantity <= 0:
            quantity = None
        price, _ = to_cents(entry.get("price", entry.get("amount")))
        items.append(LineItem(name=name, quantity=quantity, price=price))
    return items


def _reported_confidence(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    percent = False
    if isinstance(value, str):
        text = value.strip()
        percent = text.endswith("%")
        value = text.rstrip("%")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    if percent or 1 < number <= 100:
        number /= 100
    return max(0.0, min(number, 1.0))


class ResponseNormalizer:
    def __init__(self, envelopes: dict[str, EnvelopeAdapter] | None = None) -> None:
        self._envelopes = dict(envelopes or DEFAULT_ENVELOPES)

    def extract_text(self, provider_id: str, raw: dict[str, Any]) -> str:
        descriptor = get_provider(provider_id)
        adapter = self._envelopes.get(descriptor.endpoint_shape)
        if adapter is None:
            raise MalformedResponseError(
                f"No envelope adapter for {descriptor.endpoint_shape}",
                code="unsupported_envelope",
            )
        return adapter.extract_text(raw)

    def normalize(
        self,
        provider_id: str,
        raw: dict[str, Any],
        *,
        captured_at: datetime | None = None,
    ) -> ExpenseCandidate:
        text = self.extract_text(provider_id, raw)
        return self.normalize_text(text, captured_at=captured_at)

    def normalize_text(self, text: str, *, captured_at: datetime | None = None) -> ExpenseCandidate:
        return self.coerce(find_structured_block(text), captured_at=captured_at)

    def coerce(self, data: dict[str, Any], *, captured_at: datetime | None = None) -> ExpenseCandidate:
        flags: list[str] = []
        penalties = 0

        money: dict[str, int | None] = {}
        for field_name in MONEY_FIELDS:
            cents, problem = to_cents(_pick(data, field_name))
            if problem is not None:
                flags.append(f"{problem}_{field_name}")
                penalties += 1
            money[field_name] = cents

        receipt_date: str | None = None
        raw_date = _pick(data, "date")
        if raw_date is not None:
            parsed = parse_date(raw_date)
            if parsed is None:
                flags.append("invalid_date")
                penalties += 1
            else:
                receipt_date = parsed.isoformat()
                reference = (captured_at or datetime.now(timezone.utc)).date()
                if parsed > reference + FUTURE_DATE_TOLERANCE:
                    flags.append("future_date")
                    penalties += 1

        merchant = normalize_merchant(_pick(data, "merchant"))
        present = {
            "merchant": bool(merchant),
            "amount": money["amount"] is not None,
            "date": receipt_date is not None,
            "tax": money["tax"] is not None,
        }
        base = _reported_confidence(_pick(data, "confidence"))
        if base is None:
            base = sum(1 for name in EXPECTED_FIELDS if present[name]) / len(EXPECTED_FIELDS)
        confidence = round(max(0.0, min(base - penalties * CONFIDENCE_PENALTY, 1.0)), 4)

        notes = _pick(data, "notes")
        candidate = ExpenseCandidate(
            merchant=merchant,
            amount=money["amount"],
            date=receipt_date,
            time=normalize_time(_pick(data, "time")),
            tax=money["tax"],
            tax_type=normalize_tax_type(_pick(data, "tax_type")),
            tax_rate=_normalize_tax_rate(_pick(data, "tax_rate")),
            subtotal=money["subtotal"],
            tip=money["tip"],
            currency=_normalize_currency(_pick(data, "currency")),
            category=normalize_category(_pick(data, "category")),
            payment_method=normalize_payment_method(_pick(data, "payment_method")),
            notes=str(notes).strip()[:500] if notes is not None else None,
            items=_normalize_items(_pick(data, "items")),
            confidence=confidence,
            flags=flags,
        )
        for violation in evaluate_business_rules(candidate):
            if violation["code"] not in candidate.flags:
                candidate.flags.append(violation["code"])
        return candidate
