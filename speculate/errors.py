"""
Typed errors raised by the prediction, points and leaderboard services.

Each error carries a machine-readable code and a message that can be shown to
the user as-is. None of them are retried by the services; they describe a
caller mistake or a business-rule rejection.
"""


class SpeculateError(Exception):
    """Base class for all user-facing service errors"""

    status_code = 400
    code = "error"

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self):
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SpeculateError):
    """Malformed or missing arguments"""

    status_code = 400
    code = "validation_error"


class NotFoundError(SpeculateError):
    status_code = 404
    code = "not_found"


class StateConflictError(SpeculateError):
    """Operation is not allowed in the entity's current state"""

    status_code = 409
    code = "state_conflict"


class AuthorizationError(SpeculateError):
    status_code = 403
    code = "forbidden"


class InsufficientBalanceError(SpeculateError):
    status_code = 402
    code = "insufficient_balance"
