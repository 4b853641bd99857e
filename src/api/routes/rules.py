"""API routes for user rules (reusable prompt fragments mentioned with @name)."""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.deps import get_user_id
from src.api.schemas import RuleListResponse, RuleResponse, SaveRuleRequest
from src.db.connection import get_db
from src.db.models import UserRule
from src.errors import NotFoundError
from src.services.conversation_persistence_service import ConversationPersistenceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rules", tags=["rules"])


def _rule_to_dict(rule: UserRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "rule": rule.rule,
        "attach": rule.attach,
        "created_at": rule.created_at,
        "updated_at": rule.updated_at,
    }


@router.get("", response_model=RuleListResponse)
def list_rules(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    rules = ConversationPersistenceService(db).list_rules(user_id)
    return {"rules": [_rule_to_dict(r) for r in rules]}


@router.put("/{name}", response_model=RuleResponse)
def save_rule(
    name: str,
    body: SaveRuleRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Create or replace the rule mentioned as @name."""
    rule = ConversationPersistenceService(db).save_rule(
        user_id, name, body.rule, attach=body.attach
    )
    logger.info("Saved rule user=%s name=%s attach=%s", user_id, rule.name, rule.attach)
    return _rule_to_dict(rule)


@router.delete("/{rule_id}")
def delete_rule(
    rule_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if not ConversationPersistenceService(db).delete_rule(user_id, rule_id):
        raise NotFoundError("Rule", rule_id)
    return {"deleted": True, "id": rule_id}
