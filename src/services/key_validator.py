"""Liveness probes for vendor API keys.

Each vendor gets one cheap authenticated request, bounded by a hard
timeout. Results are always returned as a ValidationResult; network
failures, timeouts and vendors without a probe resolve to typed
outcomes instead of exceptions.

Vendor-specific heuristics live in small predicate functions so each
one can be tested on its own:

- Model-listing probes (OpenAI, OpenRouter, DeepSeek, Together AI,
  Groq, Mistral): 2xx valid, 401/403 invalid, 429 rate limited.
- Anthropic has no free listing call, so the probe sends a 1-token
  completion. A 400 means the request was authenticated but rejected
  on content, so the key is valid; only 401/403 reject the key.
- Google takes the key as a ``key=`` query parameter and reports bad
  keys as 400 with an ``error.message`` body.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from src.config import ValidationConfig, get_config
from src.services.model_catalog import Vendor
from src.utils.redaction import redact_for_logging

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_PROBE_MODEL = "claude-3-haiku-20240307"


class ValidationOutcome(str, Enum):
    """Typed result of a credential probe."""

    VALID = "valid"
    INVALID_KEY = "invalid_key"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    NOT_IMPLEMENTED = "not_implemented"


@dataclass
class ValidationResult:
    """Uniform probe result returned for every vendor."""

    vendor: str
    valid: bool
    outcome: ValidationOutcome
    error: str | None = None
    response_time_ms: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "vendor": self.vendor,
            "valid": self.valid,
            "outcome": self.outcome.value,
            "error": self.error,
            "response_time_ms": self.response_time_ms,
            "details": self.details,
        }


@dataclass
class BatchValidationReport:
    """Per-item results plus aggregate summary for a batch validation."""

    results: list[ValidationResult]

    @property
    def summary(self) -> dict[str, int]:
        total = len(self.results)
        valid = sum(1 for r in self.results if r.valid)
        average = (
            round(sum(r.response_time_ms for r in self.results) / total) if total else 0
        )
        return {
            "total": total,
            "valid": valid,
            "invalid": total - valid,
            "average_response_time": average,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary,
        }


@dataclass(frozen=True)
class ProbeRequest:
    """HTTP request a probe sends."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    json: dict[str, Any] | None = None


# --- Status predicates ---


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def listing_key_accepted(status_code: int) -> bool:
    """Model-listing probes: any 2xx proves the key."""
    return is_success(status_code)


def listing_key_rejected(status_code: int) -> bool:
    return status_code in (401, 403)


def anthropic_key_accepted(status_code: int) -> bool:
    """Anthropic: 2xx, or 400 from an authenticated but unacceptable request."""
    return is_success(status_code) or status_code == 400


def anthropic_key_rejected(status_code: int) -> bool:
    return status_code in (401, 403)


def google_key_rejected(status_code: int) -> bool:
    """Google reports unknown keys as 400 INVALID_ARGUMENT."""
    return status_code in (400, 401, 403)


def is_rate_limited(status_code: int) -> bool:
    return status_code == 429


# --- Request builders ---


def _bearer(url: str) -> Callable[[str], ProbeRequest]:
    def build(secret: str) -> ProbeRequest:
        return ProbeRequest("GET", url, headers={"Authorization": f"Bearer {secret}"})
    return build


def _anthropic_request(secret: str) -> ProbeRequest:
    return ProbeRequest(
        "POST",
        "https://api.anthropic.com/v1/messages",
        headers={
            "x-api-key": secret,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        },
        json={
            "model": ANTHROPIC_PROBE_MODEL,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "test"}],
        },
    )


def _google_request(secret: str) -> ProbeRequest:
    return ProbeRequest(
        "GET",
        "https://generativelanguage.googleapis.com/v1beta/models",
        params={"key": secret},
    )


# --- Detail extractors ---


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _models_count(response: httpx.Response, list_key: str = "data") -> dict[str, Any]:
    models = _json_body(response).get(list_key)
    return {"models_count": len(models)} if isinstance(models, list) else {}


def _openai_details(response: httpx.Response) -> dict[str, Any]:
    details = _models_count(response)
    organization = response.headers.get("openai-organization")
    if organization:
        details["organization_id"] = organization
    return details


def _anthropic_details(response: httpx.Response) -> dict[str, Any]:
    details = {}
    limit = response.headers.get("anthropic-ratelimit-requests-limit")
    remaining = response.headers.get("anthropic-ratelimit-requests-remaining")
    if limit is not None:
        details["rate_limit"] = limit
    if remaining is not None:
        details["remaining_requests"] = remaining
    return details


def _google_details(response: httpx.Response) -> dict[str, Any]:
    return _models_count(response, list_key="models")


def _openrouter_details(response: httpx.Response) -> dict[str, Any]:
    details = _models_count(response)
    credits = response.headers.get("x-ratelimit-remaining-credits")
    if credits is not None:
        details["credits_remaining"] = credits
    return details


def _google_error(response: httpx.Response) -> str | None:
    error = _json_body(response).get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return None


@dataclass(frozen=True)
class VendorProbe:
    """How one vendor's key is probed and how its response is read."""

    build_request: Callable[[str], ProbeRequest]
    accepted: Callable[[int], bool] = listing_key_accepted
    rejected: Callable[[int], bool] = listing_key_rejected
    details: Callable[[httpx.Response], dict[str, Any]] = _models_count
    error_message: Callable[[httpx.Response], str | None] = lambda response: None


PROBES: Mapping[Vendor, VendorProbe] = {
    Vendor.OPENAI: VendorProbe(
        _bearer("https://api.openai.com/v1/models"), details=_openai_details
    ),
    Vendor.ANTHROPIC: VendorProbe(
        _anthropic_request,
        accepted=anthropic_key_accepted,
        rejected=anthropic_key_rejected,
        details=_anthropic_details,
    ),
    Vendor.GOOGLE: VendorProbe(
        _google_request,
        rejected=google_key_rejected,
        details=_google_details,
        error_message=_google_error,
    ),
    Vendor.OPENROUTER: VendorProbe(
        _bearer("https://openrouter.ai/api/v1/models"), details=_openrouter_details
    ),
    Vendor.DEEPSEEK: VendorProbe(_bearer("https://api.deepseek.com/v1/models")),
    Vendor.TOGETHERAI: VendorProbe(_bearer("https://api.together.xyz/v1/models")),
    Vendor.GROQ: VendorProbe(_bearer("https://api.groq.com/openai/v1/models")),
    Vendor.MISTRAL: VendorProbe(_bearer("https://api.mistral.ai/v1/models")),
}


def classify_response(probe: VendorProbe, response: httpx.Response) -> tuple[ValidationOutcome, str | None]:
    """Map a probe response to an outcome and optional error message.

    Rejection is checked before acceptance so that a vendor's own
    rejection rule wins when both could match.
    """
    status = response.status_code
    if probe.rejected(status):
        return ValidationOutcome.INVALID_KEY, probe.error_message(response) or "Invalid API key"
    if probe.accepted(status):
        return ValidationOutcome.VALID, None
    if is_rate_limited(status):
        return ValidationOutcome.RATE_LIMITED, "Rate limit exceeded"
    return (
        ValidationOutcome.PROVIDER_ERROR,
        probe.error_message(response) or f"Unexpected response: HTTP {status}",
    )


class KeyValidator:
    """Runs vendor liveness probes with a hard timeout.

    Args:
        config: Probe settings (timeout, batch concurrency, user agent).
        transport: Optional httpx transport, used by tests and proxies.
    """

    def __init__(
        self,
        config: ValidationConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or get_config().validation
        self._transport = transport

    @property
    def batch_concurrency(self) -> int:
        return self._config.batch_concurrency

    async def validate(self, vendor: Vendor | str, secret: str) -> ValidationResult:
        """Probe one API key.

        Never raises; every failure mode maps to a ValidationOutcome.

        Args:
            vendor: Vendor enum or its string value.
            secret: Plaintext API key.

        Returns:
            ValidationResult with timing and vendor-specific details.
        """
        vendor_name = vendor.value if isinstance(vendor, Vendor) else str(vendor)
        try:
            probe = PROBES.get(Vendor(vendor_name))
        except ValueError:
            probe = None
        if probe is None:
            return ValidationResult(
                vendor=vendor_name,
                valid=False,
                outcome=ValidationOutcome.NOT_IMPLEMENTED,
                error=f"Validation not implemented for provider {vendor_name}",
            )

        if not secret or not secret.strip():
            return ValidationResult(
                vendor=vendor_name,
                valid=False,
                outcome=ValidationOutcome.INVALID_KEY,
                error="API key is empty",
            )

        request = probe.build_request(secret.strip())
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._send(request), timeout=self._config.timeout_seconds
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            elapsed = _elapsed_ms(start)
            logger.info("Key probe timed out vendor=%s elapsed_ms=%d", vendor_name, elapsed)
            return ValidationResult(
                vendor=vendor_name,
                valid=False,
                outcome=ValidationOutcome.TIMEOUT,
                error=f"Validation timed out after {self._config.timeout_seconds:g}s",
                response_time_ms=elapsed,
            )
        except httpx.HTTPError as e:
            elapsed = _elapsed_ms(start)
            logger.info(
                "Key probe network error vendor=%s error=%s", vendor_name, type(e).__name__
            )
            return ValidationResult(
                vendor=vendor_name,
                valid=False,
                outcome=ValidationOutcome.NETWORK_ERROR,
                error=f"Could not reach {vendor_name}: {type(e).__name__}",
                response_time_ms=elapsed,
            )

        elapsed = _elapsed_ms(start)
        outcome, error = classify_response(probe, response)
        details = probe.details(response) if outcome == ValidationOutcome.VALID else {}
        logger.info(
            "Key probe vendor=%s status=%d outcome=%s elapsed_ms=%d",
            vendor_name, response.status_code, outcome.value, elapsed,
        )
        return ValidationResult(
            vendor=vendor_name,
            valid=outcome == ValidationOutcome.VALID,
            outcome=outcome,
            error=error,
            response_time_ms=elapsed,
            details=details,
        )

    async def validate_batch(
        self, items: Iterable[tuple[Vendor | str, str]]
    ) -> BatchValidationReport:
        """Probe many keys, never more than batch_concurrency at once.

        Items are processed in consecutive chunks; each chunk finishes
        before the next starts. Result order matches input order.
        """
        pending = list(items)
        results: list[ValidationResult] = []
        size = self._config.batch_concurrency
        for offset in range(0, len(pending), size):
            chunk = pending[offset:offset + size]
            results.extend(
                await asyncio.gather(*(self.validate(v, s) for v, s in chunk))
            )
        return BatchValidationReport(results=results)

    async def _send(self, request: ProbeRequest) -> httpx.Response:
        headers = {"User-Agent": self._config.user_agent, **request.headers}
        logger.debug("Key validation request %s", redact_for_logging({
            "method": request.method,
            "url": request.url,
            "headers": headers,
            "params": request.params,
            "json": request.json,
        }))
        async with httpx.AsyncClient(
            timeout=self._config.timeout_seconds, transport=self._transport
        ) as client:
            return await client.request(
                request.method,
                request.url,
                headers=headers,
                params=request.params or None,
                json=request.json,
            )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
