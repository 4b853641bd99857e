"""API route exposing the caller's model catalog."""

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.api.deps import get_user_id
from src.api.schemas import ModelListResponse
from src.db.connection import get_db
from src.services.credential_service import CredentialService, parse_vendor

router = APIRouter(prefix="/models", tags=["models"])


@router.get("", response_model=ModelListResponse)
def list_models(
    vendor: str | None = Query(None, description="Only this vendor's models"),
    available_only: bool = Query(False, description="Only vendors with a usable key"),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Built-in models plus the caller's custom models."""
    service = CredentialService(db=db)
    catalog = service.build_catalog(user_id)
    if available_only:
        models = catalog.available_for(service.available_vendors(user_id))
        if vendor:
            wanted = parse_vendor(vendor)
            models = [m for m in models if m.vendor == wanted]
    else:
        models = catalog.list_models(parse_vendor(vendor) if vendor else None)
    return {"models": [m.to_dict() for m in models]}
