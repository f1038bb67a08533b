"""Secret redaction for session logs and conversation records.

Free text is scanned for common secret patterns; structured payloads are
additionally scrubbed by key name before anything is written to disk.
"""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

# Dict keys whose values are never logged
_SENSITIVE_KEY = re.compile(
    r"(?:^|[_\-])(?:password|passwd|token|secret|auth|authorization|apikey|key)$",
    re.IGNORECASE,
)

# Patterns that match common secrets
_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("Anthropic Key", re.compile(
        r"sk-ant-[A-Za-z0-9_\-]{20,}"
    )),
    ("OpenAI Key", re.compile(
        r"sk-[A-Za-z0-9_\-]{20,}"
    )),
    ("Google API Key", re.compile(
        r"AIza[0-9A-Za-z_\-]{35}"
    )),
    ("Bearer Token", re.compile(
        r"[Bb]earer\s+([A-Za-z0-9_\-.]{20,})"
    )),
    ("AWS Key", re.compile(
        r"(?:AKIA|ASIA)[A-Z0-9]{16}"
    )),
    ("GitHub Token", re.compile(
        r"ghp_[A-Za-z0-9]{36}"
    )),
    ("Private Key", re.compile(
        r"-----BEGIN (?:RSA |EC |DSA )?PRIVATE KEY-----"
        r".*?"
        r"-----END (?:RSA |EC |DSA )?PRIVATE KEY-----",
        re.DOTALL,
    )),
    ("Password Assignment", re.compile(
        r"(?:password|passwd|pwd)[\s:=]+['\"]([^'\"]{8,})['\"]",
        re.IGNORECASE,
    )),
    ("Connection String", re.compile(
        r"(?:postgres|mysql|mongodb|redis)://[^\s'\"]+:[^\s@'\"]+@",
        re.IGNORECASE,
    )),
]


def redact_secrets(text: str) -> str:
    """Replace detected secrets in text with [REDACTED:<label>] markers."""
    result = text
    for label, pattern in _PATTERNS:
        result = pattern.sub(f"[REDACTED:{label}]", result)
    return result


def has_secrets(text: str) -> bool:
    """Check if text contains any detectable secrets."""
    return any(pattern.search(text) for _, pattern in _PATTERNS)


def is_sensitive_key(name: str) -> bool:
    return bool(_SENSITIVE_KEY.search(name))


def redact_data(value: Any) -> Any:
    """Recursively scrub a JSON-like payload.

    Values under sensitive keys are replaced wholesale; remaining strings
    go through redact_secrets.
    """
    if isinstance(value, dict):
        return {
            k: REDACTED if isinstance(k, str) and is_sensitive_key(k) else redact_data(v)
            for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return [redact_data(v) for v in value]
    if isinstance(value, str):
        return redact_secrets(value)
    return value
