# tests/unit/test_state_machine.py

import pytest

from cinehold.domain.state_machine import CheckoutStateMachine, CheckoutStatus
from cinehold.domain.exceptions import InvalidStateTransitionError


# ---------------------
# VALID TRANSITIONS
# ---------------------

def test_valid_happy_path():
    assert CheckoutStateMachine.can_transition(
        CheckoutStatus.SELECTING,
        CheckoutStatus.AWAITING_PAYMENT,
    )

    assert CheckoutStateMachine.can_transition(
        CheckoutStatus.AWAITING_PAYMENT,
        CheckoutStatus.SETTLED,
    )


def test_deadline_and_cancel_reachable_from_both_live_states():
    for live in (CheckoutStatus.SELECTING, CheckoutStatus.AWAITING_PAYMENT):
        assert CheckoutStateMachine.can_transition(live, CheckoutStatus.EXPIRED)
        assert CheckoutStateMachine.can_transition(live, CheckoutStatus.CANCELLED)


def test_sources_for_builds_compare_and_swap_predicates():
    assert CheckoutStateMachine.sources_for(CheckoutStatus.EXPIRED) == {
        CheckoutStatus.SELECTING,
        CheckoutStatus.AWAITING_PAYMENT,
    }
    assert CheckoutStateMachine.sources_for(CheckoutStatus.SETTLED) == {
        CheckoutStatus.AWAITING_PAYMENT,
    }


# ---------------------
# INVALID TRANSITIONS
# ---------------------

def test_cannot_skip_payment():
    with pytest.raises(InvalidStateTransitionError):
        CheckoutStateMachine.validate_transition(
            CheckoutStatus.SELECTING,
            CheckoutStatus.SETTLED,
        )


def test_failure_requires_a_payment_attempt():
    assert not CheckoutStateMachine.can_transition(
        CheckoutStatus.SELECTING,
        CheckoutStatus.FAILED,
    )


@pytest.mark.parametrize(
    "terminal",
    [
        CheckoutStatus.SETTLED,
        CheckoutStatus.FAILED,
        CheckoutStatus.EXPIRED,
        CheckoutStatus.CANCELLED,
    ],
)
def test_terminal_states_are_absorbing(terminal):
    assert CheckoutStateMachine.is_terminal(terminal)
    assert CheckoutStateMachine.get_allowed_transitions(terminal) == set()

    with pytest.raises(InvalidStateTransitionError):
        CheckoutStateMachine.validate_transition(
            terminal,
            CheckoutStatus.AWAITING_PAYMENT,
        )


def test_error_message_names_both_states():
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        CheckoutStateMachine.validate_transition(
            CheckoutStatus.SETTLED,
            CheckoutStatus.CANCELLED,
        )

    assert exc_info.value.from_state == "SETTLED"
    assert exc_info.value.to_state == "CANCELLED"
    assert "SETTLED -> CANCELLED" in str(exc_info.value)


def test_invalid_type_guard():
    with pytest.raises(TypeError):
        CheckoutStateMachine.validate_transition(
            "SELECTING",  # invalid type
            CheckoutStatus.AWAITING_PAYMENT,
        )
