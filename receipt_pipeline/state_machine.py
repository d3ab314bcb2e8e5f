from __future__ import annotations

from typing import Final


class InvalidTransitionError(ValueError):
    pass


TERMINAL_STATES: Final[set[str]] = {"completed", "failed"}

# Removal is not a state: any item may leave the ledger via discard or finalize.
ALLOWED_TRANSITIONS: Final[dict[str, set[str]]] = {
    "pending": {"processing"},
    "processing": {"completed", "pending", "failed"},
    "completed": set(),
    "failed": {"pending"},
}


def can_transition(from_state: str, to_state: str) -> bool:
    from_norm = from_state.strip().lower()
    to_norm = to_state.strip().lower()
    return to_norm in ALLOWED_TRANSITIONS.get(from_norm, set())


def transition_state(from_state: str, to_state: str) -> str:
    from_norm = from_state.strip().lower()
    to_norm = to_state.strip().lower()

    if from_norm not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(f"Unknown state: {from_state}")
    if to_norm not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(f"Unknown state: {to_state}")
    if to_norm not in ALLOWED_TRANSITIONS[from_norm]:
        raise InvalidTransitionError(f"Invalid transition: {from_norm} -> {to_norm}")
    return to_norm
