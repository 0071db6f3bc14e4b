"""Domain errors raised by the tracking pipeline.

Each error carries an HTTP status and a machine-readable code so the API
layer can translate it with a single exception handler.
"""


class TrackingError(Exception):
    """Base class for operational errors."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(TrackingError):
    """Malformed or out-of-range input. Raised before anything is persisted."""

    status_code = 400
    default_code = "VALIDATION_FAILED"


class AuthorizationError(TrackingError):
    """Caller is not entitled to the shipment."""

    status_code = 403
    default_code = "ACCESS_DENIED"


class NotFoundError(TrackingError):
    """Unknown shipment or advisory."""

    status_code = 404
    default_code = "NOT_FOUND"


class InvalidStateError(TrackingError):
    """Operation not allowed in the shipment's current status."""

    status_code = 409
    default_code = "INVALID_STATUS"


class InsufficientDataError(TrackingError):
    """Route analysis needs at least two samples."""

    status_code = 422
    default_code = "INSUFFICIENT_DATA"
