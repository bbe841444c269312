"""Classify Keeper Commander output into benign chatter and real errors.

Commander prints login banners, biometric prompts and sync progress on both
stdout and stderr. Lines matching ``BENIGN_PATTERNS`` are dropped before the
remaining text is checked for ``ERROR_KEYWORDS``.
"""

from __future__ import annotations

import re

BENIGN_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^Logging in to Keeper Commander",
        r"^Logging in\.\.\.$",
        r"^Attempting biometric authentication",
        r"^Press Ctrl\+C to skip biometric",
        r"^Successfully authenticated with Biometric Login",
        r"^Biometric authentication (successful|completed)",
        r"^Syncing\.\.\.",
        r"^Sync(ing)? (started|completed|progress)",
        r"^Decrypted \[\d+\] record\(s\)",
        r"^Loading records",
        r"^Keeper Commander shell",
        r"^Type [\"']?(h|help|\?)[\"']? for",
        r"^Enter [\"']?(q|quit|exit)[\"']? to",
    )
)

ERROR_KEYWORDS: tuple[str, ...] = ("error", "failed", "exception", "traceback")


def _is_benign(line: str) -> bool:
    stripped = line.strip()
    return any(p.search(stripped) for p in BENIGN_PATTERNS)


def clean(text: str) -> str:
    """Drop benign noise lines and stray carriage returns, then trim."""
    if not text:
        return ""
    kept = [
        line
        for line in text.replace("\r", "").split("\n")
        if not _is_benign(line)
    ]
    return "\n".join(kept).strip()


def is_real_error(text: str) -> bool:
    """True when the cleaned text still mentions an error keyword."""
    if not text or not text.strip():
        return False
    cleaned = clean(text)
    if not cleaned:
        return False
    lowered = cleaned.lower()
    return any(keyword in lowered for keyword in ERROR_KEYWORDS)
