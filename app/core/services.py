"""
Base service layer patterns for business logic encapsulation.

- ServiceResult: Standard result wrapper returned by public service APIs
- BaseService: Base class with logging and transaction helpers

Component services raise domain exceptions (core.exceptions). Public entry
points catch them at the boundary and return a ServiceResult, so callers
(views, tasks) never need try/except around a service call.

Usage:
    from core.services import BaseService, ServiceResult

    class OrderService(BaseService):
        @classmethod
        def cancel(cls, order_id) -> ServiceResult[Order]:
            try:
                with cls.atomic():
                    order = Order.objects.select_for_update().get(pk=order_id)
                    order.cancel()
                    order.save()
            except BaseApplicationError as e:
                return cls.handle_exception(e, "cancel order")
            return ServiceResult.success(order)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

from .exceptions import BaseApplicationError, ConsistencyError

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures
        details: Extra context copied from the domain exception
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)
    details: dict[str, Any] | None = field(default=None)

    @classmethod
    def ok(cls, data: T) -> ServiceResult[T]:
        """Alias for success()."""
        return cls(success=True, data=data)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            errors: Field-level errors (for validation failures)
            details: Additional context (ids, limits, amounts)
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
            details=details,
        )

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Create a failed result from an exception.

        Application errors keep their own message, code and details.
        Anything else is reported by class name.
        """
        if isinstance(exc, BaseApplicationError):
            return cls.failure(
                exc.message,
                error_code=error_code or exc.error_code,
                details=exc.details or None,
            )
        return cls.failure(str(exc), error_code=error_code or exc.__class__.__name__.upper())

    def to_response(self) -> dict[str, Any]:
        """Convert to the JSON body returned by API views."""
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {
            "success": False,
            "error": self.error,
        }
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        if self.details:
            response["details"] = self.details
        return response

    def map(self, func) -> ServiceResult:
        """Transform the data if successful; failures pass through unchanged."""
        if self.success and self.data is not None:
            return ServiceResult.success(func(self.data))
        return self  # type: ignore

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Design Notes:
        - Use @staticmethod or @classmethod (no instance state)
        - Raise domain exceptions inside; convert at the public boundary
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Logger named after the service class for easy filtering."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """Thin wrapper around transaction.atomic() that marks the boundary."""
        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: BaseApplicationError,
        context: str = "",
        log_level: int = logging.WARNING,
    ) -> ServiceResult:
        """
        Log a domain exception and turn it into a failed ServiceResult.

        ConsistencyError is always logged at CRITICAL and its message is
        replaced by a generic one before it reaches the caller.
        """
        logger = cls.get_logger()
        prefix = f"{context}: " if context else ""
        extra = {"error_code": exc.error_code, **exc.details}

        if isinstance(exc, ConsistencyError):
            logger.critical(f"{prefix}{exc.message}", extra=extra)
            return ServiceResult.failure(exc.public_message, error_code=exc.error_code)

        logger.log(log_level, f"{prefix}{exc.message}", extra=extra)
        return ServiceResult.from_exception(exc)
