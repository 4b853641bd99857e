"""API routes for vendor credential management.

Keys are validated against the vendor before they are stored and are
only ever returned masked. CredentialService is created inside each
handler so construction failures (e.g. encryption key issues) surface
as a structured 500 instead of a bare dependency error.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.responses import JSONResponse

from src.api.deps import get_user_id
from src.api.schemas import (
    BatchValidationResponse,
    SaveCredentialRequest,
    SaveCredentialResponse,
    ValidateBatchRequest,
    ValidateCredentialRequest,
    ValidationResultResponse,
)
from src.db.connection import get_db
from src.errors import DomainError, NotFoundError
from src.services.credential_service import CredentialService
from src.services.key_validator import KeyValidator
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credentials", tags=["credentials"])


class UpdateCredentialRequest(BaseModel):
    """Partial update of a stored credential's settings."""

    is_enabled: bool | None = None
    default_model: str | None = Field(None, description="Model preselected for this vendor")


class CustomModelRequest(BaseModel):
    """User-defined model served by the vendor of the path."""

    id: str = Field(..., min_length=1)
    display_name: str | None = None
    context_window: int = Field(8192, ge=1)
    input_cost_per_1k: str = "0"
    output_cost_per_1k: str = "0"
    capabilities: dict[str, bool] = Field(default_factory=dict)
    description: str = ""


def _build_service(db: Session) -> CredentialService:
    return CredentialService(db=db)


def _internal_error(e: Exception, operation: str) -> JSONResponse:
    """Build a structured 500 response and log the full traceback."""
    logger.error(
        "Unexpected error during %s: %s: %s",
        operation, type(e).__name__, e,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": sanitize_error_message(str(e))}},
    )


@router.post("/validate", response_model=ValidationResultResponse)
async def validate_credential(body: ValidateCredentialRequest) -> dict[str, Any]:
    """Probe a key against its vendor without storing it."""
    result = await KeyValidator().validate(body.vendor, body.secret)
    return result.to_dict()


@router.post("/validate-batch", response_model=BatchValidationResponse)
async def validate_credentials_batch(body: ValidateBatchRequest) -> dict[str, Any]:
    """Probe several keys with bounded concurrency."""
    report = await KeyValidator().validate_batch(
        (item.vendor, item.secret) for item in body.items
    )
    return report.to_dict()


@router.get("")
def list_credentials(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """List the caller's credentials (masked)."""
    try:
        return {"credentials": _build_service(db).list_credentials(user_id)}
    except DomainError:
        raise
    except Exception as e:
        return _internal_error(e, "list credentials")


@router.put("/{vendor}", response_model=SaveCredentialResponse)
async def save_credential(
    vendor: str,
    body: SaveCredentialRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Validate and store a key for a vendor."""
    try:
        service = _build_service(db)
        return await service.save_credential(
            user_id, vendor, body.secret, default_model=body.default_model
        )
    except DomainError:
        raise
    except Exception as e:
        return _internal_error(e, "save credential")


@router.patch("/{vendor}")
def update_credential(
    vendor: str,
    body: UpdateCredentialRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Enable/disable a vendor or change its default model."""
    try:
        service = _build_service(db)
        if body.is_enabled is not None:
            service.set_enabled(user_id, vendor, body.is_enabled)
        if "default_model" in body.model_fields_set:
            service.set_default_model(user_id, vendor, body.default_model)
        views = [c for c in service.list_credentials(user_id) if c["vendor"] == vendor.lower()]
        return views[0]
    except DomainError:
        raise
    except Exception as e:
        return _internal_error(e, "update credential")


@router.delete("/{vendor}")
def delete_credential(
    vendor: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Forget the stored key for a vendor."""
    try:
        if not _build_service(db).delete_credential(user_id, vendor):
            raise NotFoundError("Credential", vendor)
        return {"deleted": True, "vendor": vendor}
    except DomainError:
        raise
    except Exception as e:
        return _internal_error(e, "delete credential")


@router.post("/{vendor}/revalidate", response_model=ValidationResultResponse)
async def revalidate_credential(
    vendor: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Re-probe a stored key and record the verdict."""
    try:
        result = await _build_service(db).revalidate(user_id, vendor)
        return result.to_dict()
    except DomainError:
        raise
    except Exception as e:
        return _internal_error(e, "revalidate credential")


@router.post("/{vendor}/models", status_code=201)
def add_custom_model(
    vendor: str,
    body: CustomModelRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Register a model id the built-in catalog does not know."""
    try:
        descriptor = _build_service(db).add_custom_model(
            user_id, {**body.model_dump(), "vendor": vendor.lower()}
        )
        return descriptor.to_dict()
    except DomainError:
        raise
    except Exception as e:
        return _internal_error(e, "add custom model")


@router.delete("/{vendor}/models/{model_id:path}")
def remove_custom_model(
    vendor: str,
    model_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    try:
        if not _build_service(db).remove_custom_model(user_id, vendor, model_id):
            raise NotFoundError("Custom model", model_id)
        return {"deleted": True, "model_id": model_id}
    except DomainError:
        raise
    except Exception as e:
        return _internal_error(e, "remove custom model")
