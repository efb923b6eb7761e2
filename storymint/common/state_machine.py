"""Status transitions enforced for mint intents and ledger records."""

INTENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"submitted", "failed"},
    "submitted": {"confirmed", "failed"},
    "confirmed": set(),
    # A ledger retry re-opens a failed intent for a fresh submission.
    "failed": {"pending"},
}

LEDGER_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"MINTED", "FAILED"},
    "FAILED": {"PENDING"},
    "MINTED": set(),
}


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = INTENT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
