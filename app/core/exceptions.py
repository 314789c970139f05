"""
Base exception classes for application-wide error handling.

Every domain error raised by a service derives from BaseApplicationError so
that views, tasks and the orchestrator can translate failures into a stable
machine-readable shape without knowing the concrete class.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Bad input, rejected before any side effect
    ├── NotFoundError - Resource not found
    ├── PermissionDeniedError - Caller may not perform the action
    ├── ConflictError - Resource state forbids the action
    │   └── PreconditionError - A business precondition does not hold
    ├── ExternalServiceError - Third-party call failed
    └── ConsistencyError - Internal invariant broken, needs an operator

Usage:
    from core.exceptions import ValidationError, PreconditionError

    raise ValidationError("Justification is required", error_code="INVALID_JUSTIFICATION")

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=e.http_status)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (ids, amounts, limits)
    """

    default_error_code: str = "APPLICATION_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Returns:
            Dict with error and error_code keys, plus details when present
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation fails.

    Use for malformed amounts, empty free-text fields and requests that do
    not fit the target resource. Services raise it before touching the
    database or any external system.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """Raised when a requested resource does not exist."""

    default_error_code: str = "NOT_FOUND"
    http_status: int = 404


class PermissionDeniedError(BaseApplicationError):
    """
    Raised when the caller lacks permission for an operation.

    Example:
        if responder.pk != order.customer_id:
            raise PermissionDeniedError(
                "Only the customer can respond to a price adjustment",
                details={"order_id": str(order.pk)},
            )
    """

    default_error_code: str = "PERMISSION_DENIED"
    http_status: int = 403


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with the current resource state.

    Use for:
    - Concurrent modification conflicts
    - Invalid state transitions
    - Optimistic locking failures

    Note:
        HTTP 409 Conflict is the appropriate status for these errors.
    """

    default_error_code: str = "CONFLICT"
    http_status: int = 409


class PreconditionError(ConflictError):
    """
    Raised when a business precondition for an operation does not hold.

    Unlike a plain conflict, retrying the same call will keep failing until
    something else changes (a new authorization, a different amount, a
    payment method on file).
    """

    default_error_code: str = "PRECONDITION_FAILED"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Attributes:
        is_retryable: The same request may succeed if sent again
        outcome_unknown: The remote side may have applied the request;
            confirm remote state before retrying

    Note:
        Log the original error for debugging but don't expose
        internal details to clients in production.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
    http_status: int = 502
    is_retryable: bool = False
    outcome_unknown: bool = False


class ConsistencyError(BaseApplicationError):
    """
    Raised when stored state contradicts an internal invariant.

    These indicate a bug or a lost write and are logged at CRITICAL.
    The message is never shown to end users.
    """

    default_error_code: str = "CONSISTENCY_ERROR"
    http_status: int = 500
    public_message: str = "The request could not be completed. Support has been notified."
