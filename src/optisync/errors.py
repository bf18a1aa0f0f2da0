"""Error taxonomy shared by gateways, stores and the reconciler."""

from __future__ import annotations


class OptisyncError(Exception):
    """Base error with a machine-readable code."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class ValidationError(OptisyncError):
    """Bad local input. Raised before any optimistic effect is applied."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, "invalid_input")
        self.field = field


class NotFoundError(OptisyncError):
    """Target record is no longer in the local store (or the store is closed)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "not_found")


GATEWAY_ERROR_CODES = frozenset(
    {
        "network",
        "timeout",
        "unauthorized",
        "forbidden",
        "validation",
        "conflict",
        "not_found",
        "server",
        "invalid_response",
    }
)


class GatewayError(OptisyncError):
    """Remote gateway failure. Always triggers rollback of the optimistic effect."""

    def __init__(self, message: str, code: str = "server", status_code: int | None = None) -> None:
        if code not in GATEWAY_ERROR_CODES:
            raise ValueError(f"Unknown gateway error code: {code}")
        super().__init__(message, code)
        self.status_code = status_code


class InvalidCredentialsError(GatewayError):
    def __init__(self, message: str = "Invalid email or password") -> None:
        super().__init__(message, "unauthorized", 400)


class DuplicateRegistrationError(GatewayError):
    def __init__(self, message: str = "User already registered") -> None:
        super().__init__(message, "conflict", 422)


_GATEWAY_MESSAGES = {
    "network": "You appear to be offline. Check your connection and try again.",
    "timeout": "The server took too long to respond. Please try again.",
    "unauthorized": "Your session has expired. Please sign in again.",
    "forbidden": "You are not allowed to change this item.",
    "validation": "The server rejected this change.",
    "conflict": "This item was changed elsewhere. Refresh and try again.",
    "not_found": "This item no longer exists.",
    "server": "Something went wrong on the server. Please try again.",
    "invalid_response": "The server sent an unexpected response.",
}


def user_message(exc: BaseException) -> str:
    """Map an error to the text shown in a user-visible notification."""
    if isinstance(exc, (InvalidCredentialsError, DuplicateRegistrationError)):
        return str(exc)
    if isinstance(exc, GatewayError):
        return _GATEWAY_MESSAGES.get(exc.code, _GATEWAY_MESSAGES["server"])
    if isinstance(exc, ValidationError):
        return str(exc)
    return str(exc) or "An unexpected error occurred"
