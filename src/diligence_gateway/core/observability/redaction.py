"""Credential redaction for provider error messages and request parameters.

Provider errors frequently echo the failing URL, which for several data APIs
carries the API key as a query parameter. Everything that reaches a response
envelope or a log record passes through ``redact_sensitive_data`` first.
"""

import json
import re
from typing import Any, Final, List, Tuple

SENSITIVE_PATTERNS: Final[List[Tuple[str, str]]] = [
    # Query-string credentials: ?apikey=..., &api_key=..., &token=...
    (r"(?i)([?&](?:api[_-]?key|apikey|access[_-]?token|token|key)=)[^&\s'\"]+", "QUERY_KEY"),
    # key=value / key: value pairs in free text
    (r"(?i)((?:api[_-]?key|apikey|secret|access[_-]?token)\s*[:=]\s*['\"]?)[a-zA-Z0-9_\-\.]{12,}", "API_KEY"),
    (r"(?i)(bearer\s+)[a-zA-Z0-9_\-\.=]+", "BEARER_TOKEN"),
    (r"(?i)(x-api-key:\s*)\S+", "API_KEY_HEADER"),
    # GitHub tokens
    (r"()gh[pousr]_[a-zA-Z0-9]{36,}", "GITHUB_TOKEN"),
    (r"()github_pat_[a-zA-Z0-9_]{40,}", "GITHUB_TOKEN"),
]
"""Patterns for credentials that must never leave the gateway.

Each pattern's first group is the prefix kept in the output; the remainder
of the match is replaced by the redaction marker.
"""

_SENSITIVE_KEYS: Final[frozenset] = frozenset(
    {
        "api_key",
        "apikey",
        "token",
        "access_token",
        "secret",
        "password",
        "authorization",
        "x_api_key",
    }
)


def _redact_string(text: str) -> str:
    result = text
    for pattern, label in SENSITIVE_PATTERNS:
        result = re.sub(pattern, lambda m, lbl=label: f"{m.group(1)}[REDACTED:{lbl}]", result)
    return result


def redact_sensitive_data(data: Any, *, max_depth: int = 10) -> Any:
    """Recursively redact credentials from strings, dicts, and lists.

    Dict values stored under a known credential key are replaced entirely;
    strings are scanned with ``SENSITIVE_PATTERNS``. Other types pass through.

    Example:
        >>> redact_sensitive_data("GET https://x.io/q?symbol=IBM&apikey=abc123")
        'GET https://x.io/q?symbol=IBM&apikey=[REDACTED:QUERY_KEY]'
    """
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, str):
        return _redact_string(data)

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower().replace("-", "_")
            if key_lower in _SENSITIVE_KEYS:
                result[key] = f"[REDACTED:{key_lower.upper()}]"
            else:
                result[key] = redact_sensitive_data(value, max_depth=max_depth - 1)
        return result

    if isinstance(data, (list, tuple)):
        items = [redact_sensitive_data(item, max_depth=max_depth - 1) for item in data]
        return tuple(items) if isinstance(data, tuple) else items

    return data


def redact_for_logging(data: Any) -> str:
    """Redact and serialize data for a log line."""
    redacted = redact_sensitive_data(data)
    try:
        return json.dumps(redacted, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return str(redacted)
