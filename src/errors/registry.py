"""Error code registry with E-XXXX format codes.

This module defines the error code system for Kepler Chat, organizing
errors into categories:
- E-2xxx: Validation errors
- E-3xxx: Vendor API errors
- E-4xxx: System/internal errors
- E-5xxx: Authentication errors

Each error includes a code, title, message template, and remediation steps.
The structured payload recorded on a failed assistant message is built
from these definitions by error_payload().
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from src.utils.redaction import sanitize_error_message


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # E-2xxx: Validation errors
    PROVIDER = "provider"  # E-3xxx: Vendor API errors
    SYSTEM = "system"  # E-4xxx: System/internal errors
    AUTH = "auth"  # E-5xxx: Authentication errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Request",
        message_template="{detail}",
        remediation="Correct the request and send it again.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Unsupported Attachment",
        message_template="{detail}",
        remediation="Remove the attachment or pick a model that supports it.",
    ),
    # Vendor API errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.PROVIDER,
        title="Provider Error",
        message_template="The AI provider returned an error: {detail}",
        remediation="Try again in a moment or switch to another model.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.PROVIDER,
        title="Provider Timeout",
        message_template="The AI provider did not respond in time: {detail}",
        remediation="Try again in a moment.",
        is_retryable=True,
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Generation Failed",
        message_template="Unexpected error while generating a response: {detail}",
        remediation="Try again. If the problem persists, check the server logs.",
        is_retryable=True,
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.SYSTEM,
        title="Generation Cancelled",
        message_template="{detail}",
        remediation="Send the message again to get a complete answer.",
    ),
    "E-4004": ErrorCode(
        code="E-4004",
        category=ErrorCategory.SYSTEM,
        title="Not Found",
        message_template="{detail}",
        remediation="Check the identifier and try again.",
    ),
    "E-4009": ErrorCode(
        code="E-4009",
        category=ErrorCategory.SYSTEM,
        title="Generation In Progress",
        message_template="{detail}",
        remediation="Wait for the current response to finish or cancel it.",
    ),
    # Authentication errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.AUTH,
        title="Credential Problem",
        message_template="{detail}",
        remediation="Add or re-validate your API key for this provider in settings.",
    ),
}

_FALLBACK_CODE = "E-4001"


def get_error(code: str) -> ErrorCode | None:
    """Look up an error code definition.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all error codes in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Build the structured error recorded on a failed message.

    Domain errors keep their own code; anything else is reported as
    E-4001. The message text is sanitized so vendor responses that echo
    credentials never reach persistence.

    Args:
        exc: The exception that ended the generation.

    Returns:
        Dict with code, category, title, message, remediation, retryable.
    """
    code = getattr(exc, "code", None) or _FALLBACK_CODE
    definition = get_error(code) or ERROR_REGISTRY[_FALLBACK_CODE]
    detail = sanitize_error_message(str(exc) or type(exc).__name__)
    retryable = getattr(exc, "retryable", definition.is_retryable)
    return {
        "code": definition.code,
        "category": definition.category.value,
        "title": definition.title,
        "message": definition.message_template.format(detail=detail),
        "remediation": definition.remediation,
        "retryable": bool(retryable),
    }
