"""Unit tests for mint intent and ledger state-machine guardrails."""

import pytest

from storymint.common.state_machine import LEDGER_TRANSITIONS, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending", "submitted")
    validate_transition("submitted", "confirmed")


def test_invalid_transition():
    """Skipping submission would allow a confirm without a tx hash."""

    with pytest.raises(ValueError):
        validate_transition("pending", "confirmed")


def test_confirmed_intent_is_terminal():
    for target in ("pending", "submitted", "failed"):
        with pytest.raises(ValueError):
            validate_transition("confirmed", target)


def test_minted_ledger_record_is_terminal():
    with pytest.raises(ValueError):
        validate_transition("MINTED", "PENDING", LEDGER_TRANSITIONS)
    validate_transition("FAILED", "PENDING", LEDGER_TRANSITIONS)
