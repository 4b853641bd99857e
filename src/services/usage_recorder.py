"""Cost computation and the append-only usage ledger.

Cost is derived only from token counts the vendor reported. A missing
count contributes zero; nothing is estimated.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from src.db.connection import get_db_context
from src.db.models import UsageRecord, generate_uuid
from src.providers.config import Usage
from src.services.conversation_persistence_service import ConversationPersistenceService
from src.services.model_catalog import ModelDescriptor

logger = logging.getLogger(__name__)

_THOUSAND = Decimal(1000)


def compute_cost(usage: Usage | None, model: ModelDescriptor) -> Decimal:
    """Cost in USD: prompt/1000 * input rate + completion/1000 * output rate."""
    if usage is None:
        return Decimal(0)
    prompt = Decimal(usage.prompt_tokens or 0)
    completion = Decimal(usage.completion_tokens or 0)
    cost = (
        prompt / _THOUSAND * model.input_cost_per_1k
        + completion / _THOUSAND * model.output_cost_per_1k
    )
    return cost


class UsageRecorder:
    """Writes one UsageRecord per completed generation.

    Args:
        db_context: Factory for a short-lived session context manager.
    """

    def __init__(
        self,
        db_context: Callable[[], AbstractContextManager[Session]] = get_db_context,
    ) -> None:
        self._db_context = db_context

    def record(
        self,
        user_id: str,
        conversation_id: str | None,
        vendor: str,
        model_id: str,
        usage: Usage | None,
        cost: Decimal,
    ) -> UsageRecord:
        usage = usage or Usage()
        prompt = usage.prompt_tokens or 0
        completion = usage.completion_tokens or 0
        record = UsageRecord(
            id=generate_uuid(),
            user_id=user_id,
            conversation_id=conversation_id,
            vendor=vendor,
            model_id=model_id,
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=usage.total_tokens if usage.total_tokens is not None else prompt + completion,
            cost_usd=str(cost),
        )
        with self._db_context() as db:
            ConversationPersistenceService(db).record_usage(record)
        logger.debug(
            "usage recorded user=%s model=%s tokens=%d cost=%s",
            user_id, model_id, record.total_tokens, record.cost_usd,
        )
        return record

    def summarize(self, user_id: str) -> list[dict[str, Any]]:
        """Aggregate tokens and cost per (vendor, model_id)."""
        with self._db_context() as db:
            records = ConversationPersistenceService(db).list_usage(user_id)

        totals: dict[tuple[str, str], dict[str, Any]] = {}
        for record in records:
            key = (record.vendor, record.model_id)
            entry = totals.setdefault(key, {
                "vendor": record.vendor,
                "model_id": record.model_id,
                "generations": 0,
                "prompt_tokens": 0,
                "completion_tokens": 0,
                "total_tokens": 0,
                "cost_usd": Decimal(0),
            })
            entry["generations"] += 1
            entry["prompt_tokens"] += record.prompt_tokens
            entry["completion_tokens"] += record.completion_tokens
            entry["total_tokens"] += record.total_tokens
            entry["cost_usd"] += Decimal(record.cost_usd)

        return [
            {**entry, "cost_usd": str(entry["cost_usd"])}
            for entry in sorted(totals.values(), key=lambda e: (e["vendor"], e["model_id"]))
        ]
