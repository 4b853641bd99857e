"""Error handling framework for Kepler Chat.

This package provides:
- Typed domain exceptions raised by the generation core
- Error code registry with E-XXXX format codes
- Structured error payloads recorded on failed messages

Error categories:
- E-2xxx: Validation errors
- E-3xxx: Vendor API errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication errors
"""

from src.errors.domain import (
    AuthError,
    ConflictError,
    DomainError,
    GenerationCancelledError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    UnsupportedCapabilityError,
    ValidationError,
)
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    error_payload,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Domain
    "DomainError",
    "ValidationError",
    "AuthError",
    "ProviderError",
    "ProviderTimeoutError",
    "GenerationCancelledError",
    "UnsupportedCapabilityError",
    "NotFoundError",
    "ConflictError",
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    "error_payload",
]
