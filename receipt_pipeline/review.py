from __future__ import annotations

from dataclasses import dataclass

from schemas.expense_schema import ExpenseCandidate


@dataclass(frozen=True)
class ReviewDecision:
    status: str
    reason_codes: tuple[str, ...]


def decide_review(
    candidate: ExpenseCandidate,
    *,
    confidence_threshold: float = 0.5,
) -> ReviewDecision:
    """Mark a candidate for closer attention; never blocks it from being edited."""
    reasons: list[str] = []
    if candidate.confidence < confidence_threshold:
        reasons.append("low_confidence")
    reasons.extend(flag for flag in candidate.flags if flag not in reasons)
    if reasons:
        return ReviewDecision(status="REVIEW_REQUIRED", reason_codes=tuple(reasons))
    return ReviewDecision(status="READY", reason_codes=tuple())
