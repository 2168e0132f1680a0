"""Redaction helpers for failure digests handed to retried commands.

Digests are built from captured shell output, so terminal color codes are dropped and
credentials commonly echoed by build tools are masked before the text leaves the store.
"""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_PREVIEW_CHARS = 2_000

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

_Replacement = str | Callable[[re.Match[str]], str]

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b[a-z0-9_]*(api_?key|secret|token|password)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)\b([a-z][a-z0-9+.\-]*://)[^/\s:@]+:[^/\s@]+@"),
        r"\1[redacted]@",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Strip color codes, redact obvious secrets and clamp to ``max_chars``."""

    compact = strip_ansi(text).strip()
    if not compact:
        return ""

    for pattern, replacement in _SECRET_PATTERNS:
        compact = pattern.sub(replacement, compact)
    return compact[:max_chars]
