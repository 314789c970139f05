"""
Core Application - shared infrastructure for the domain apps.

Models (import from core.models / core.model_mixins):
    - BaseModel: Abstract model with created_at / updated_at
    - UUIDPrimaryKeyMixin: UUID primary key

Services (import from core.services):
    - BaseService: Base class for service layer classes
    - ServiceResult: Success/failure wrapper returned by public services

Exceptions (import from core.exceptions):
    - BaseApplicationError and its ValidationError, NotFoundError,
      PermissionDeniedError, ConflictError, PreconditionError,
      ExternalServiceError and ConsistencyError subclasses

Note:
    Models are NOT imported here to avoid AppRegistryNotReady errors.
"""

from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ConsistencyError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    PreconditionError,
    ValidationError,
)
from .services import BaseService, ServiceResult

__all__ = [
    "BaseService",
    "ServiceResult",
    "BaseApplicationError",
    "ValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "ConflictError",
    "PreconditionError",
    "ExternalServiceError",
    "ConsistencyError",
]
