"""
Domain error taxonomy.

Components raise these where they own the invariant; main.py maps them to
HTTP responses of the form {"success": false, "error": CODE, "message": ...}.
"""


class ArenaError(Exception):
    """Base exception for contest engine failures"""

    status_code = 500
    error_code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class UnauthorizedError(ArenaError):
    """Identity missing or invalid (raised by the transport, never the core)"""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Authentication failed"


class NotFoundError(ArenaError):
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "Resource not found"


class ValidationError(ArenaError):
    """Malformed or semantically invalid input"""
    status_code = 400
    error_code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class ConflictError(ArenaError):
    """Valid request, but the current state forbids it"""
    status_code = 409
    error_code = "CONFLICT"
    default_message = "Conflict"


class PaymentRequiredError(ArenaError):
    status_code = 402
    error_code = "PAYMENT_REQUIRED"
    default_message = "Payment required"


class InsufficientFundsError(PaymentRequiredError):
    """Raised when a wallet balance cannot cover a debit"""
    default_message = "Insufficient balance"


class ForbiddenError(ArenaError):
    """Action disallowed by the contest phase"""
    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "Forbidden"


class InternalError(ArenaError):
    """Storage/infrastructure failure; detail is logged, never returned"""


class PriceUnavailableError(InternalError):
    """Raised when candle data needed for a valuation is missing"""
    default_message = "Price data unavailable"
