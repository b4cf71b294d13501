from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Sequence

REDACTED_PLACEHOLDER = "[REDACTED]"

BUILTIN_REDACT_PATTERNS = [
    # Generic api keys / tokens with a recognizable prefix.
    re.compile(r"\b(sk|pk|api|key|token|secret|password|auth)[_-]?[a-zA-Z0-9]{20,}\b", re.IGNORECASE),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    # JWT
    re.compile(r"\beyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*\b"),
    re.compile(r"Bearer\s+[a-zA-Z0-9_.-]+", re.IGNORECASE),
    re.compile(
        r"-----BEGIN (RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----[\s\S]*?"
        r"-----END (RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"
    ),
]

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WS_RE = re.compile(r"\s+")


def redact_text(text: str, patterns: Iterable["re.Pattern[str]"] = ()) -> str:
    redacted = text
    for pattern in BUILTIN_REDACT_PATTERNS:
        redacted = pattern.sub(REDACTED_PLACEHOLDER, redacted)
    for pattern in patterns:
        redacted = pattern.sub(REDACTED_PLACEHOLDER, redacted)
    return redacted


def redact_object(obj: Any, patterns: Sequence["re.Pattern[str]"] = ()) -> Any:
    """Return a copy of ``obj`` with every string leaf redacted."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return redact_text(obj, patterns)
    if isinstance(obj, dict):
        return {k: redact_object(v, patterns) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact_object(v, patterns) for v in obj]
    return obj


def sanitize_for_trace(value: str) -> str:
    """Strip control characters and collapse whitespace for trace names."""
    cleaned = _CONTROL_RE.sub(" ", value)
    return _WS_RE.sub(" ", cleaned).strip()


class Redactor:
    """Applies the export mode to user-supplied content.

    ``full`` redacts secrets, ``metadata_only`` swaps any present content for
    the placeholder, ``off`` leaves content untouched.
    """

    def __init__(self, mode: str = "full", patterns: Sequence["re.Pattern[str]"] = ()) -> None:
        self.mode = mode
        self.patterns = list(patterns)

    def text(self, content: Optional[str]) -> Optional[str]:
        if not content:
            return content
        if self.mode == "metadata_only":
            return REDACTED_PLACEHOLDER
        if self.mode == "off":
            return content
        return redact_text(content, self.patterns)

    def obj(self, value: Any) -> Any:
        if value is None:
            return None
        if self.mode == "metadata_only":
            return REDACTED_PLACEHOLDER
        if self.mode == "off":
            return value
        return redact_object(value, self.patterns)
