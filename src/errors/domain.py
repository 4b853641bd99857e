"""Typed domain exceptions for API error mapping.

Every failure the generation core can report is one of these types.
Each carries a registry code so the same exception can be rendered as
an HTTP error envelope or recorded as a structured error on a message.

Usage:
    # In service layer
    raise NotFoundError("Conversation", conversation_id)

    # In route handler (see src/api/main.py for the registered handlers)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    code: str = "E-4001"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    """Malformed input, caught before any vendor call. Maps to HTTP 400."""

    code = "E-2001"


class UnsupportedCapabilityError(DomainError):
    """Attachment type not supported by the selected model. Maps to HTTP 422."""

    code = "E-2002"

    def __init__(self, model_id: str, capability: str) -> None:
        super().__init__(
            f"Model '{model_id}' does not support {capability} attachments"
        )
        self.model_id = model_id
        self.capability = capability


class ProviderError(DomainError):
    """Vendor returned an error not otherwise classified. Maps to HTTP 502."""

    code = "E-3001"
    retryable = True

    def __init__(
        self, message: str, vendor: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.vendor = vendor
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Vendor call exceeded its time bound."""

    code = "E-3002"


class GenerationCancelledError(DomainError):
    """Generation stopped at the user's request."""

    code = "E-4003"


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    code = "E-4004"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Resource conflict (e.g., generation already running). Maps to HTTP 409."""

    code = "E-4009"


class AuthError(DomainError):
    """Missing, invalid, or expired vendor credential. Maps to HTTP 401."""

    code = "E-5001"

    def __init__(self, message: str, vendor: str | None = None) -> None:
        super().__init__(message)
        self.vendor = vendor
