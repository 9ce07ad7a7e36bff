from typing import Optional


class BookingError(Exception):
    """Base class for every error the engine reports to a caller."""

    code = "booking_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(BookingError):
    """Malformed input (non-integer hours, unknown unit, missing field). Raised before any lock."""

    code = "validation_error"


class NotFoundError(BookingError):
    code = "not_found"


class ForbiddenError(BookingError):
    code = "forbidden"


class ConflictError(BookingError):
    """The requested interval overlaps a live booking or hold."""

    code = "time_range_occupied"


class PreconditionError(BookingError):
    """The record is in the wrong lifecycle state for the requested transition."""

    code = "precondition_failed"


class PaymentFailure(BookingError):
    """
    The gateway rejected an authorization or capture.
    retryable=True means the hold is still active and one more confirmation may be attempted.
    """

    code = "payment_failed"

    def __init__(self, message: str, code: Optional[str] = None, gateway_code: Optional[str] = None,
                 retryable: bool = False):
        super().__init__(message, code)
        self.gateway_code = gateway_code
        self.retryable = retryable


class AmountMismatchError(BookingError):
    """Client-echoed amount differs from the quoted price. Always fatal to the saga."""

    code = "amount_mismatch"
