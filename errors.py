"""
Typed business errors for the order and review core.

Services raise these; main.py turns every subclass into the same JSON
envelope so the UI can switch on ``code`` instead of parsing messages.
"""
from typing import Iterable, Optional, Union


class OrderAppError(Exception):
    code = "UNKNOWN_ERROR"
    http_status = 500
    message = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        detail: Union[str, Iterable[str], None] = None,
        code: Optional[str] = None,
    ):
        if message:
            self.message = message
        if code:
            self.code = code

        if detail is None:
            self.detail = []
        elif isinstance(detail, str):
            self.detail = [detail]
        else:
            self.detail = list(detail)

        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "type": "error",
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
        }


class ValidationError(OrderAppError):
    """Malformed input: empty items, out-of-range rating, missing field."""
    code = "VALIDATION_ERROR"
    http_status = 400
    message = "Input validation failed"


class AuthError(OrderAppError):
    """Requester is not the customer/seller the action belongs to."""
    code = "NOT_PERMITTED"
    http_status = 403
    message = "Not permitted"


class NotFoundError(OrderAppError):
    code = "NOT_FOUND"
    http_status = 404
    message = "Resource not found"


class InvalidTransitionError(OrderAppError):
    """Status change outside the order state table."""
    code = "INVALID_TRANSITION"
    http_status = 409
    message = "Invalid status transition"

    def __init__(self, current=None, attempted=None, message: Optional[str] = None):
        self.current = current
        self.attempted = attempted
        detail = None
        if current is not None and attempted is not None:
            detail = f"current status {_label(current)}, attempted {_label(attempted)}"
        super().__init__(message=message, detail=detail)


class ConflictError(OrderAppError):
    """Uniqueness violation: duplicate review or reply."""
    code = "CONFLICT"
    http_status = 409
    message = "Conflicting request"


class PreconditionError(OrderAppError):
    """Review eligibility failed: order not delivered or item not in order."""
    code = "PRECONDITION_FAILED"
    http_status = 422
    message = "Precondition failed"


def _label(status) -> str:
    return getattr(status, "value", str(status))
