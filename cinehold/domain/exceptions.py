

class CheckoutCoreError(Exception):
    """
    Base exception for all domain-level errors
    inside the cinema checkout core.
    """


class InvalidStateTransitionError(CheckoutCoreError):
    """
    Raised when an illegal checkout state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class SeatUnavailable(CheckoutCoreError):
    """Raised when a requested seat is held, sold, broken or unknown."""

    def __init__(self, seat_ids, message: str | None = None):
        self.seat_ids = sorted(seat_ids)
        super().__init__(message or f"Seats {self.seat_ids} are not available")


class InvalidSelection(CheckoutCoreError):
    """Raised when a selection is empty, too large or not payable."""


class SessionNotEditable(CheckoutCoreError):
    """Raised when a session is no longer in the selecting state."""


class HoldNotFound(CheckoutCoreError):
    """Raised when a hold id does not exist."""


class HoldExpired(CheckoutCoreError):
    """Raised when a hold is past its deadline or no longer active."""


class SessionNotFound(CheckoutCoreError):
    """Raised when a checkout token does not exist."""


class SessionExpired(CheckoutCoreError):
    """Raised when a checkout session is past its deadline."""


class PromotionRejected(CheckoutCoreError):
    """
    A promotion could not be applied. Never fatal: the total is
    computed without the discount and the reason is reported.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SignatureInvalid(CheckoutCoreError):
    """Raised when a gateway callback fails HMAC verification."""


class GatewayBusinessFailure(CheckoutCoreError):
    """Valid signature carrying a non-success gateway response code."""

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"{code}: {reason}")


class DuplicateCallback(CheckoutCoreError):
    """Callback for an order whose session is already terminal."""


class PaymentConfigurationError(CheckoutCoreError):
    """Raised when gateway credentials are missing."""
