"""Error taxonomy shared by services and the HTTP layer.

Services raise these; ``hotelbooking.main`` maps them to JSON responses. ``extra`` is merged
into the response body so clients get machine-readable remediation fields.
"""


class BookingError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str = "", **extra):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra


class ValidationError(BookingError):
    status_code = 400
    code = "validation_error"


class PolicyViolation(BookingError):
    status_code = 400
    code = "policy_violation"

    def __init__(self, message: str = "", reason: str = "", requires_payment: bool = False,
                 min_payment_percentage: int = 0, **extra):
        super().__init__(
            message,
            reason=reason or "policy_violation",
            requires_payment=requires_payment,
            min_payment_percentage=min_payment_percentage,
            **extra,
        )
        self.reason = reason or "policy_violation"
        self.requires_payment = requires_payment
        self.min_payment_percentage = min_payment_percentage


class InvalidState(PolicyViolation):
    code = "invalid_state"

    def __init__(self, message: str = "", **extra):
        super().__init__(message, reason="invalid_state", **extra)


class Forbidden(BookingError):
    status_code = 403
    code = "forbidden"


class NotFound(BookingError):
    status_code = 404
    code = "not_found"


class ConflictError(BookingError):
    status_code = 409
    code = "conflict"


class ExternalGatewayError(BookingError):
    status_code = 503
    code = "gateway_unavailable"

    def __init__(self, message: str = "", timeout: bool = False, **extra):
        super().__init__(message, **extra)
        if timeout:
            self.status_code = 504
            self.code = "gateway_timeout"


class DataAccessError(BookingError):
    status_code = 500
    code = "data_access_error"
