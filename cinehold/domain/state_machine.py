# cinehold/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from cinehold.domain.exceptions import InvalidStateTransitionError


class CheckoutStatus(str, Enum):
    SELECTING = "SELECTING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class HoldStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"
    CONVERTED = "CONVERTED"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    INVALIDATED = "INVALIDATED"


class CheckoutStateMachine:
    """
    Central lifecycle controller for checkout sessions.
    Defines the legal state transitions.
    """

    _ALLOWED_TRANSITIONS: Dict[CheckoutStatus, Set[CheckoutStatus]] = {
        CheckoutStatus.SELECTING: {
            CheckoutStatus.AWAITING_PAYMENT,
            CheckoutStatus.EXPIRED,
            CheckoutStatus.CANCELLED,
        },
        CheckoutStatus.AWAITING_PAYMENT: {
            CheckoutStatus.SETTLED,
            CheckoutStatus.FAILED,
            CheckoutStatus.EXPIRED,
            CheckoutStatus.CANCELLED,
        },
        CheckoutStatus.SETTLED: set(),
        CheckoutStatus.FAILED: set(),
        CheckoutStatus.EXPIRED: set(),
        CheckoutStatus.CANCELLED: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: CheckoutStatus,
        to_status: CheckoutStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: CheckoutStatus,
        to_status: CheckoutStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: CheckoutStatus) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(
        cls, status: CheckoutStatus
    ) -> Set[CheckoutStatus]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def sources_for(cls, to_status: CheckoutStatus) -> Set[CheckoutStatus]:
        """
        Returns every state from which to_status is reachable in one step.
        Used to build compare-and-swap predicates.
        """
        cls._ensure_valid_status(to_status)
        return {
            source
            for source, targets in cls._ALLOWED_TRANSITIONS.items()
            if to_status in targets
        }

    @staticmethod
    def _ensure_valid_status(status: CheckoutStatus) -> None:
        if not isinstance(status, CheckoutStatus):
            raise TypeError(
                f"Expected CheckoutStatus, got {type(status)}"
            )
