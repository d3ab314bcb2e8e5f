from __future__ import annotations

from typing import Any

from schemas.expense_schema import ExpenseCandidate

UNUSUALLY_HIGH_AMOUNT_CENTS = 100_000_00


def evaluate_business_rules(
    candidate: ExpenseCandidate,
    *,
    tolerance_cents: int = 1,
) -> list[dict[str, Any]]:
    violations: list[dict[str, Any]] = []

    if not candidate.merchant.strip():
        violations.append(
            {
                "code": "missing_merchant",
                "severity": "warning",
                "message": "merchant name could not be read",
            }
        )

    if candidate.amount is None:
        violations.append(
            {
                "code": "missing_amount",
                "severity": "warning",
                "message": "total amount could not be read",
            }
        )
    elif candidate.amount > UNUSUALLY_HIGH_AMOUNT_CENTS:
        violations.append(
            {
                "code": "unusually_high_amount",
                "severity": "warning",
                "message": "amount is unusually high",
                "actual_total": candidate.amount,
            }
        )

    if candidate.amount is not None and candidate.tax is not None and candidate.tax > candidate.amount:
        violations.append(
            {
                "code": "tax_exceeds_amount",
                "severity": "error",
                "message": "tax cannot exceed the total amount",
                "actual_total": candidate.amount,
                "actual_tax": candidate.tax,
            }
        )

    if candidate.amount is not None and candidate.subtotal is not None:
        computed_total = candidate.subtotal + (candidate.tax or 0) + (candidate.tip or 0)
        # Tax-inclusive receipts print subtotal == total; only flag when neither reading fits.
        if (
            abs(computed_total - candidate.amount) > tolerance_cents
            and abs(candidate.subtotal - candidate.amount) > tolerance_cents
        ):
            violations.append(
                {
                    "code": "amount_mismatch",
                    "severity": "error",
                    "message": "subtotal + tax + tip does not match amount",
                    "expected_total": computed_total,
                    "actual_total": candidate.amount,
                }
            )

    priced = [item for item in candidate.items if item.price is not None]
    target = candidate.subtotal if candidate.subtotal is not None else candidate.amount
    if priced and target is not None:
        line_sum = round(sum((item.price or 0) * (item.quantity or 1) for item in priced))
        if len(priced) == len(candidate.items) and abs(line_sum - target) > tolerance_cents:
            violations.append(
                {
                    "code": "line_item_sum_mismatch",
                    "severity": "warning",
                    "message": "sum of item prices does not match subtotal",
                    "expected_subtotal": line_sum,
                    "actual_subtotal": target,
                }
            )

    return violations
