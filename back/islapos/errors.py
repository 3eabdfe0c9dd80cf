"""
Error taxonomy shared by every route.

Handlers raise these; `main.register_error_handlers` turns them into
`{"error": message, ...}` JSON bodies with the matching status code.
"""

from typing import Any


class ApiError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


class InvalidInput(ApiError):
    status_code = 400
    default_message = "Invalid input"


class NoActiveRestaurant(InvalidInput):
    default_message = "No active restaurant selected"


class NoRestaurantAssigned(InvalidInput):
    default_message = "No restaurant assigned"


class UpstreamError(ApiError):
    """The identity provider or another external service rejected a call."""

    status_code = 400
    default_message = "Upstream service error"


class InvalidTransition(ApiError):
    status_code = 400
    default_message = "Invalid status transition"


class ConfigurationError(ApiError):
    status_code = 500
    default_message = "Server is not configured"


class InviteFailed(ApiError):
    """The invitation was issued but binding the invited user failed."""

    status_code = 500
    default_message = "Invitation could not be completed"
