"""Redaction helpers for routine log fields.

Sender addresses are phone-derived, so addresses, names and payloads logged
outside of a terminal job failure pass through safe_log_context(). Row and
task identifiers are logged as they are.
"""

import re
from typing import Any

_JID_PATTERN = re.compile(r"\b\d{6,}(?::\d+)?@[a-z.]+\b")
# Not inside identifiers such as UUIDs
_PHONE_PATTERN = re.compile(r"(?<![\w-])\+?\d[\d\s\-()]{8,}\d(?![\w-])")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact gateway addresses, phone numbers and emails from a string."""
    result = _JID_PATTERN.sub(_REDACTED, value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # Payload structure only, never values
        return f"dict(keys={sorted(str(k) for k in value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
