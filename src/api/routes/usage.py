"""API route reporting the caller's token usage and cost."""

from typing import Any

from fastapi import APIRouter, Depends

from src.api.deps import get_usage_recorder, get_user_id
from src.api.schemas import UsageSummaryResponse
from src.services.usage_recorder import UsageRecorder

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageSummaryResponse)
def usage_summary(
    user_id: str = Depends(get_user_id),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> dict[str, Any]:
    """Totals per vendor and model. Costs are decimal strings in USD."""
    return {"usage": recorder.summarize(user_id)}
