"""Exceptions for the payment order subsystem.

Each class carries the HTTP status the API surfaces it with and a stable
machine-readable code.
"""


class PaymentError(Exception):
    """Base exception for payment errors."""
    http_status = 500
    code = "payment_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__
        self.context = context


class ValidationError(PaymentError):
    """Request input has an invalid shape or value."""
    http_status = 400
    code = "validation_error"


class InvalidPrice(ValidationError):
    """Price must be greater than zero."""
    code = "invalid_price"


class InvalidSignature(PaymentError):
    """Payment could not be verified."""
    http_status = 400
    code = "invalid_signature"


class Unauthorized(PaymentError):
    """Staff credentials are missing or wrong."""
    http_status = 401
    code = "unauthorized"


class NotFound(PaymentError):
    """Requested record does not exist."""
    http_status = 404
    code = "not_found"


class InvalidTransition(PaymentError):
    """Order is not in the status the transition requires."""
    http_status = 409
    code = "invalid_transition"

    def __init__(self, message: str = "", current_status=None, **context):
        super().__init__(message, current_status=current_status, **context)
        self.current_status = current_status


class InvalidState(PaymentError):
    """Order is not awaiting consultation pricing."""
    http_status = 409
    code = "invalid_state"


class GatewayUnavailable(PaymentError):
    """Payment provider could not be reached; retry checkout."""
    http_status = 502
    code = "gateway_unavailable"
