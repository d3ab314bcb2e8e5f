from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from receipt_pipeline.extraction_service import MalformedResponseError
from receipt_pipeline.normalization import (
    CONFIDENCE_PENALTY,
    NormalizationError,
    ResponseNormalizer,
    find_structured_block,
    normalize_time,
    parse_date,
    to_cents,
)
from receipt_pipeline.providers import UnknownProviderError

CAPTURED_AT = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def _fenced(payload: dict) -> str:
    return f"Here is the extracted data:\n\n```json\n{json.dumps(payload)}\n```\n"


def _openai(text: str) -> dict:
    return {"id": "chatcmpl-1", "choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]}


def _anthropic(text: str) -> dict:
    return {"id": "msg_1", "type": "message", "content": [{"type": "text", "text": text}]}


def _gemini(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


ITALIAN_KITCHEN = {"merchant": "The Italian Kitchen", "amount": 87.50, "date": "2024-03-15"}


@pytest.mark.parametrize(
    ("provider_id", "wrap"),
    [("openai", _openai), ("anthropic", _anthropic), ("gemini", _gemini)],
)
def test_each_envelope_yields_the_same_candidate(provider_id: str, wrap) -> None:
    candidate = ResponseNormalizer().normalize(provider_id, wrap(_fenced(ITALIAN_KITCHEN)), captured_at=CAPTURED_AT)
    assert candidate.merchant == "The Italian Kitchen"
    assert candidate.amount == 8750
    assert candidate.date == "2024-03-15"
    assert candidate.confidence == 0.75
    assert candidate.flags == []


def test_openai_content_parts_list_is_joined() -> None:
    raw = {"choices": [{"message": {"content": [{"type": "text", "text": _fenced(ITALIAN_KITCHEN)}]}}]}
    candidate = ResponseNormalizer().normalize("openai", raw, captured_at=CAPTURED_AT)
    assert candidate.amount == 8750


def test_anthropic_skips_non_text_blocks() -> None:
    raw = {"content": [{"type": "tool_use", "id": "t1"}, {"type": "text", "text": _fenced(ITALIAN_KITCHEN)}]}
    candidate = ResponseNormalizer().normalize("anthropic", raw, captured_at=CAPTURED_AT)
    assert candidate.merchant == "The Italian Kitchen"


@pytest.mark.parametrize(
    ("provider_id", "raw"),
    [
        ("openai", {"choices": []}),
        ("openai", {"choices": [{"message": {"content": None}}]}),
        ("anthropic", {"content": [{"type": "image"}]}),
        ("anthropic", {"error": {"type": "overloaded_error"}}),
        ("gemini", {"candidates": [{"content": {"parts": []}}]}),
        ("gemini", {"promptFeedback": {"blockReason": "SAFETY"}}),
    ],
)
def test_envelope_missing_text_is_malformed(provider_id: str, raw: dict) -> None:
    with pytest.raises(MalformedResponseError) as exc_info:
        ResponseNormalizer().normalize(provider_id, raw)
    assert exc_info.value.code == "invalid_envelope"
    assert not exc_info.value.retryable


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(UnknownProviderError):
        ResponseNormalizer().normalize("mistral", _openai(_fenced(ITALIAN_KITCHEN)))


def test_missing_adapter_is_malformed() -> None:
    with pytest.raises(MalformedResponseError, match="No envelope adapter"):
        ResponseNormalizer(envelopes={"openai_chat": object()}).extract_text("gemini", _gemini("{}"))


def test_no_structured_data_in_plain_text() -> None:
    with pytest.raises(NormalizationError) as exc_info:
        ResponseNormalizer().normalize_text("I could not read this receipt. The image is too blurry.")
    assert exc_info.value.kind == "no_structured_data"


def test_empty_text_is_no_structured_data() -> None:
    with pytest.raises(NormalizationError) as exc_info:
        find_structured_block("   ")
    assert exc_info.value.kind == "no_structured_data"


def test_non_object_json_is_no_structured_data() -> None:
    with pytest.raises(NormalizationError) as exc_info:
        find_structured_block("[1, 2, 3]")
    assert exc_info.value.kind == "no_structured_data"


def test_fenced_block_with_missing_brace_is_invalid_syntax() -> None:
    text = '```json\n{\n  "merchant": "Test Store",\n  "amount": 25.99\n\n```'
    with pytest.raises(NormalizationError) as exc_info:
        ResponseNormalizer().normalize_text(text)
    assert exc_info.value.kind == "invalid_syntax"


def test_unterminated_bare_object_is_invalid_syntax() -> None:
    with pytest.raises(NormalizationError) as exc_info:
        find_structured_block('{"merchant": "Test Store", "amount": 25.99')
    assert exc_info.value.kind == "invalid_syntax"


def test_first_parseable_block_wins() -> None:
    text = (
        "First result:\n```json\n"
        + json.dumps({"merchant": "Starbucks", "amount": 12.75, "date": "2024-03-15"})
        + "\n```\nAlternative:\n```json\n"
        + json.dumps({"merchant": "Coffee Shop", "amount": 12.00, "date": "2024-03-14"})
        + "\n```"
    )
    candidate = ResponseNormalizer().normalize_text(text, captured_at=CAPTURED_AT)
    assert candidate.merchant == "Starbucks"
    assert candidate.amount == 1275


def test_first_of_several_bare_objects_wins() -> None:
    text = 'Receipt: {"merchant": "Blue Bottle", "amount": 4.5} and the card slip: {"merchant": "Visa"}'
    assert find_structured_block(text) == {"merchant": "Blue Bottle", "amount": 4.5}


def test_unparseable_first_block_falls_through_to_next() -> None:
    text = '```json\n{"merchant": \n```\n```json\n{"merchant": "Second", "amount": 3}\n```'
    assert find_structured_block(text)["merchant"] == "Second"


def test_untagged_fence_and_bare_json_are_accepted() -> None:
    assert find_structured_block('```\n{"merchant": "Fence"}\n```')["merchant"] == "Fence"
    assert find_structured_block('{"merchant": "Bare"}')["merchant"] == "Bare"
    assert find_structured_block('Sure! {"merchant": "Inline"} Hope that helps.')["merchant"] == "Inline"


def test_negative_amount_is_nulled_and_lowers_confidence() -> None:
    normalizer = ResponseNormalizer()
    base = {"merchant": "Refund Store", "date": "2024-03-15"}
    valid = normalizer.normalize_text(_fenced({**base, "amount": 50.00}), captured_at=CAPTURED_AT)
    negative = normalizer.normalize_text(_fenced({**base, "amount": -50.00}), captured_at=CAPTURED_AT)

    assert negative.amount is None
    assert "negative_amount" in negative.flags
    assert negative.confidence < valid.confidence


def test_penalty_applies_to_reported_confidence() -> None:
    payload = {"merchant": "Shop", "amount": 10, "tax": -1, "confidence": 0.9}
    candidate = ResponseNormalizer().normalize_text(_fenced(payload))
    assert candidate.tax is None
    assert candidate.confidence == pytest.approx(0.9 - CONFIDENCE_PENALTY)


def test_confidence_is_floored_at_zero() -> None:
    payload = {"amount": "abc", "tax": -1, "tip": True, "subtotal": [], "date": "soon", "confidence": 0.2}
    candidate = ResponseNormalizer().normalize_text(_fenced(payload))
    assert candidate.confidence == 0.0
    assert {"invalid_amount", "negative_tax", "invalid_tip", "invalid_subtotal", "invalid_date"} <= set(
        candidate.flags
    )


@pytest.mark.parametrize(("reported", "expected"), [(95, 0.95), ("87%", 0.87), (1.7e3, 1.0), ("high", 0.5)])
def test_reported_confidence_forms(reported: object, expected: float) -> None:
    payload = {"merchant": "Shop", "amount": 10, "confidence": reported}
    candidate = ResponseNormalizer().normalize_text(_fenced(payload))
    assert candidate.confidence == pytest.approx(expected)


@pytest.mark.parametrize(
    ("value", "cents"),
    [
        ("$1,234.56", 123456),
        ("USD 12.00", 1200),
        ("12,50 EUR", 1250),
        ("1.234,50", 123450),
        (87.5, 8750),
        (0.125, 13),
        (10, 1000),
        ("0", 0),
    ],
)
def test_money_strings_are_stripped(value: object, cents: int) -> None:
    assert to_cents(value) == (cents, None)


def test_money_rejections() -> None:
    assert to_cents(None) == (None, None)
    assert to_cents("free") == (None, "invalid")
    assert to_cents(True) == (None, "invalid")
    assert to_cents(float("nan")) == (None, "invalid")
    assert to_cents("-$5.00") == (None, "negative")


def test_future_date_is_kept_but_flagged() -> None:
    payload = {"merchant": "Time Traveler Store", "amount": 50.00, "date": "2099-12-31"}
    candidate = ResponseNormalizer().normalize_text(_fenced(payload), captured_at=CAPTURED_AT)
    assert candidate.date == "2099-12-31"
    assert "future_date" in candidate.flags
    assert candidate.confidence == pytest.approx(0.75 - CONFIDENCE_PENALTY)


def test_next_day_date_is_tolerated() -> None:
    payload = {"merchant": "Late Night Diner", "amount": 9.99, "date": "2024-03-16"}
    candidate = ResponseNormalizer().normalize_text(_fenced(payload), captured_at=CAPTURED_AT)
    assert "future_date" not in candidate.flags


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-03-15", "2024-03-15"),
        ("2024-03-15T10:30:00Z", "2024-03-15"),
        ("2024/03/15", "2024-03-15"),
        ("03/15/2024", "2024-03-15"),
        ("15/03/2024", "2024-03-15"),
        ("15.03.2024", "2024-03-15"),
        ("March 15, 2024", "2024-03-15"),
        ("15 Mar 2024", "2024-03-15"),
    ],
)
def test_date_formats(raw: str, expected: str) -> None:
    parsed = parse_date(raw)
    assert parsed is not None
    assert parsed.isoformat() == expected


def test_unparsable_date_is_nulled() -> None:
    payload = {"merchant": "Shop", "amount": 1, "date": "sometime last week"}
    candidate = ResponseNormalizer().normalize_text(_fenced(payload))
    assert candidate.date is None
    assert "invalid_date" in candidate.flags


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("14:30", "14:30:00"), ("2:05 PM", "14:05:00"), ("12:10 am", "00:10:00"), ("25:00", None), (1430, None)],
)
def test_time_normalization(raw: object, expected: str | None) -> None:
    assert normalize_time(raw) == expected


def test_aliases_and_enumerations_are_mapped() -> None:
    payload = {
        "vendor": {"name": "  Grand   Hotel  "},
        "total": "245.00",
        "tax_amount": "20.00",
        "taxType": "Sales Tax",
        "taxRate": "8.875%",
        "sub_total": 225.00,
        "transaction_date": "2024-03-10",
        "time": "9:15 pm",
        "currency": "usd",
        "category": "Hotel stay",
        "payment_method": "VISA ****4242",
        "notes": "x" * 600,
        "confidence_score": 0.8,
    }
    candidate = ResponseNormalizer().normalize_text(_fenced(payload), captured_at=CAPTURED_AT)
    assert candidate.merchant == "Grand Hotel"
    assert candidate.amount == 24500
    assert candidate.tax == 2000
    assert candidate.subtotal == 22500
    assert candidate.tax_type == "SALES_TAX"
    assert candidate.tax_rate == 8.88
    assert candidate.date == "2024-03-10"
    assert candidate.time == "21:15:00"
    assert candidate.currency == "USD"
    assert candidate.category == "accommodation"
    assert candidate.payment_method == "card"
    assert len(candidate.notes or "") == 500
    assert candidate.confidence == 0.8
    assert candidate.flags == []


def test_unrecognized_values_fall_back() -> None:
    payload = {
        "merchant": "M" * 150,
        "amount": 1,
        "taxType": "Luxury levy",
        "currency": "US$",
        "category": "gifts",
        "paymentMethod": "crypto",
    }
    candidate = ResponseNormalizer().normalize_text(_fenced(payload))
    assert len(candidate.merchant) == 100
    assert candidate.tax_type == "OTHER"
    assert candidate.currency is None
    assert candidate.category == "other"
    assert candidate.payment_method == "other"


def test_line_items_are_parsed() -> None:
    payload = {
        "merchant": "Fashion Store",
        "amount": 80.98,
        "subtotal": 74.98,
        "tax": 6.00,
        "items": [
            {"name": "T-Shirt", "quantity": 2, "price": 29.99},
            {"description": "Cap", "quantity": 1, "price": "15.00"},
            {"quantity": 1, "price": 3},
            "bogus",
        ],
    }
    candidate = ResponseNormalizer().normalize_text(_fenced(payload))
    assert [item.name for item in candidate.items] == ["T-Shirt", "Cap"]
    assert candidate.items[0].price == 2999
    assert candidate.items[1].price == 1500
    assert candidate.flags == []


def test_non_finite_item_quantity_is_dropped() -> None:
    text = '```json\n{"merchant": "Shop", "amount": 3, "items": [{"name": "Milk", "quantity": NaN, "price": 3}]}\n```'
    candidate = ResponseNormalizer().normalize_text(text)
    assert candidate.items[0].name == "Milk"
    assert candidate.items[0].quantity is None
    assert candidate.items[0].price == 300


def test_business_rule_flags_do_not_reject() -> None:
    payload = {"merchant": "Odd Receipt", "amount": 5.00, "tax": 10.00, "subtotal": 1.00}
    candidate = ResponseNormalizer().normalize_text(_fenced(payload))
    assert candidate.amount == 500
    assert "tax_exceeds_amount" in candidate.flags
    assert "amount_mismatch" in candidate.flags


def test_partial_data_still_produces_candidate() -> None:
    candidate = ResponseNormalizer().normalize_text(_fenced({"notes": "faded receipt"}))
    assert candidate.merchant == ""
    assert candidate.amount is None
    assert candidate.confidence == 0.0
    assert "missing_merchant" in candidate.flags
    assert "missing_amount" in candidate.flags
