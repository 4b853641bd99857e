"""Pydantic schemas for the Kepler Chat HTTP API.

The generation trigger contract (GenerateRequest/GenerateResponse)
lives with the orchestrator; these are the remaining request and
response bodies.
"""

from typing import Any

from pydantic import BaseModel, Field


class ValidateCredentialRequest(BaseModel):
    """Probe a key without storing it."""

    vendor: str = Field(..., min_length=1)
    secret: str = Field("", description="Plaintext API key")


class ValidateBatchRequest(BaseModel):
    items: list[ValidateCredentialRequest] = Field(..., min_length=1, max_length=50)


class ValidationResultResponse(BaseModel):
    vendor: str
    valid: bool
    outcome: str
    error: str | None = None
    response_time_ms: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class BatchValidationResponse(BaseModel):
    results: list[ValidationResultResponse]
    summary: dict[str, int]


class SaveCredentialRequest(BaseModel):
    """Store a key for a vendor (validated first)."""

    secret: str = Field(..., min_length=1)
    default_model: str | None = None


class CredentialView(BaseModel):
    """Masked credential; the plaintext key is never returned."""

    vendor: str
    masked_key: str | None = None
    has_key: bool
    is_enabled: bool
    validation_status: str
    last_validated_at: str | None = None
    default_model: str | None = None
    custom_models: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: str | None = None


class SaveCredentialResponse(BaseModel):
    validation: ValidationResultResponse
    credential: CredentialView


class CancelResponse(BaseModel):
    cancelled: bool
    conversation_id: str


class ConversationSummary(BaseModel):
    id: str
    title: str
    vendor: str | None = None
    model_id: str | None = None
    system_prompt: str | None = None
    generating: bool
    created_at: str
    updated_at: str


class ConversationListResponse(BaseModel):
    conversations: list[ConversationSummary]


class ConversationDetailResponse(BaseModel):
    conversation: ConversationSummary
    messages: list[dict[str, Any]]


class ModelListResponse(BaseModel):
    models: list[dict[str, Any]]


class SaveRuleRequest(BaseModel):
    rule: str = Field(..., min_length=1)
    attach: str = Field("manual", description="'always' or 'manual' (on @mention)")


class RuleResponse(BaseModel):
    id: str
    name: str
    rule: str
    attach: str
    created_at: str
    updated_at: str


class RuleListResponse(BaseModel):
    rules: list[RuleResponse]


class UsageEntry(BaseModel):
    vendor: str
    model_id: str
    generations: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: str


class UsageSummaryResponse(BaseModel):
    usage: list[UsageEntry]
