"""Secret redaction for logs, error responses and persisted errors.

Vendor SDKs and HTTP errors often echo the request that failed, which
can include an API key in a header, a query string (Gemini passes
``?key=``) or a JSON body. Everything that leaves this process through
a log line, an HTTP error envelope or a message's error payload goes
through one of these helpers first.
"""

import re

# Substring patterns matched case-insensitively against dict keys
_DEFAULT_SENSITIVE_PATTERNS = frozenset({
    "secret", "token", "authorization", "api_key", "apikey",
    "x-api-key", "password", "credential", "encrypted",
})

# Keys whose entire value is redacted (regardless of content type)
_CONTAINER_KEYS = frozenset({"headers", "credentials"})

# Keys redacted only on an exact match (Gemini sends its key as ?key=)
_EXACT_KEYS = frozenset({"key"})

_REDACTED = "***REDACTED***"


def _is_sensitive_key(key: str, sensitive_patterns: frozenset[str]) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in sensitive_patterns)


def redact_for_logging(
    obj: dict,
    sensitive_patterns: frozenset[str] = _DEFAULT_SENSITIVE_PATTERNS,
) -> dict:
    """Return a copy of ``obj`` with sensitive values replaced.

    Args:
        obj: Dict to redact (not mutated).
        sensitive_patterns: Substring patterns whose matching keys' values
            should be replaced. Matching is case-insensitive.

    Returns:
        New dict with sensitive values replaced by '***REDACTED***'.
        Nested dicts and lists of dicts are handled recursively.
    """
    result = {}
    for key, value in obj.items():
        key_lower = key.lower()
        if (
            key_lower in _CONTAINER_KEYS
            or key_lower in _EXACT_KEYS
            or _is_sensitive_key(key, sensitive_patterns)
        ):
            result[key] = _REDACTED
        elif isinstance(value, dict):
            result[key] = redact_for_logging(value, sensitive_patterns)
        elif isinstance(value, list):
            result[key] = [
                redact_for_logging(item, sensitive_patterns) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


_SENSITIVE_KEYWORDS = (
    r"secret|token|password|api_key|apikey|x-api-key|authorization|credential|key"
)
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    # Authorization: Bearer <token>
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    # JSON-style "key": "value"
    r'"(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    # ?key=... or &key=... inside URLs
    r"(?<=[?&])(?:" + _SENSITIVE_KEYWORDS + r")=[^&\s\"']+"
    r"|"
    # key=value / key: value (unquoted)
    r"\b(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*(?!\*\*\*)\S+"
    r")",
)

# Bare vendor key shapes that show up without a key= prefix.
_VENDOR_KEY_SHAPES = re.compile(
    r"\b(?:sk-(?:ant-|or-v1-|proj-)?[A-Za-z0-9_\-]{16,}|AIza[0-9A-Za-z_\-]{30,}|gsk_[A-Za-z0-9]{20,})"
)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Sanitize an error message for safe persistence and display.

    Redacts key=value pairs, bearer headers, URL query keys and bare
    vendor key shapes, then truncates to max_length.

    Args:
        msg: Error message to sanitize (None passes through).
        max_length: Maximum length of the sanitized message.

    Returns:
        Sanitized and truncated message, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, msg)
    sanitized = _VENDOR_KEY_SHAPES.sub(_REDACTED, sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
