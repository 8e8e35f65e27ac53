"""
Custom exceptions for ClawChat.

Provides a hierarchy of exceptions that map to HTTP status codes
and include structured error information.
"""

from typing import Any


class ClawChatException(Exception):
    """
    Base exception for all ClawChat errors.

    All custom exceptions should inherit from this class.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            code: Machine-readable error code
            details: Additional error details
        """
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# =============================================================================
# HTTP 400 - Bad Request Errors
# =============================================================================


class BadRequestError(ClawChatException):
    """Invalid request parameters or payload."""

    status_code = 400


class InvalidCommandError(BadRequestError):
    """Inbound realtime frame could not be decoded."""

    def __init__(self, message: str, command: str | None = None) -> None:
        super().__init__(
            message=message,
            code="INVALID_COMMAND",
            details={"command": command},
        )


# =============================================================================
# HTTP 401 - Authentication Errors
# =============================================================================


class AuthenticationError(ClawChatException):
    """Authentication failed."""

    status_code = 401

    def __init__(
        self,
        message: str = "Authentication required",
        code: str = "AUTHENTICATION_REQUIRED",
    ) -> None:
        super().__init__(message=message, code=code)


class NoCredentialError(AuthenticationError):
    """Neither a session token nor an API key was presented."""

    def __init__(self) -> None:
        super().__init__(
            message="No authentication provided",
            code="NO_CREDENTIAL",
        )


class InvalidTokenError(AuthenticationError):
    """Session token signature, claims or expiry are invalid."""

    def __init__(self, message: str = "Invalid token", code: str = "INVALID_TOKEN") -> None:
        super().__init__(message=message, code=code)


class TokenExpiredError(InvalidTokenError):
    """Session token has expired. Reported to clients as ``INVALID_TOKEN``."""

    def __init__(self) -> None:
        super().__init__(message="Token has expired")
        self.details["reason"] = "expired"


class InvalidAPIKeyError(AuthenticationError):
    """API key matched no bot account."""

    def __init__(self) -> None:
        super().__init__(
            message="Invalid API key",
            code="INVALID_API_KEY",
        )


class AuthBackendError(AuthenticationError):
    """The credential store could not be consulted."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(
            message=message,
            code="AUTH_BACKEND_ERROR",
        )


# =============================================================================
# HTTP 403 - Authorization Errors
# =============================================================================


class AuthorizationError(ClawChatException):
    """Authorization failed - user lacks permission."""

    status_code = 403

    def __init__(
        self,
        message: str = "You don't have permission to perform this action",
        resource: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="FORBIDDEN",
            details={"resource": resource, "action": action},
        )


class RoomAccessDeniedError(AuthorizationError):
    """Connection is not allowed to join a room."""

    def __init__(self, room: str) -> None:
        super().__init__(
            message=f"Not allowed to join {room}",
            resource=room,
            action="join",
        )
        self.code = "ROOM_ACCESS_DENIED"


# =============================================================================
# HTTP 500 - Internal Server Errors
# =============================================================================


class InternalError(ClawChatException):
    """Internal server error."""

    status_code = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code="INTERNAL_ERROR",
        )
        self.original_error = original_error


class DeliveryError(InternalError):
    """A single recipient could not be handed an event."""

    def __init__(self, connection_id: str, reason: str) -> None:
        super().__init__(message=f"Delivery to {connection_id} failed: {reason}")
        self.code = "DELIVERY_FAILURE"
        self.details["connection_id"] = connection_id
        self.details["reason"] = reason


class PersistenceSideEffectError(InternalError):
    """A best-effort persistence touch (last seen, bot key lookup) failed."""

    def __init__(self, operation: str, original_error: Exception | None = None) -> None:
        super().__init__(
            message=f"Persistence side effect '{operation}' failed",
            original_error=original_error,
        )
        self.code = "PERSISTENCE_SIDE_EFFECT_FAILURE"
        self.details["operation"] = operation


# =============================================================================
# HTTP 503 - Service Unavailable
# =============================================================================


class ServiceUnavailableError(ClawChatException):
    """External service unavailable."""

    status_code = 503

    def __init__(self, service: str) -> None:
        super().__init__(
            message=f"Service '{service}' is currently unavailable",
            code="SERVICE_UNAVAILABLE",
            details={"service": service},
        )
