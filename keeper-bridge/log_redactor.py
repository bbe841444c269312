"""Log redaction: keeps secret field values and passwords out of log output.

Command lines such as ``record-add ... c.secret.api_key=<value>`` are logged
at debug level; the filter rewrites them before any handler formats them.
"""

from __future__ import annotations

import logging
import re
from typing import Sequence

REDACTED = "[REDACTED]"


def compile_patterns(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    """Compile patterns, skipping (and reporting) invalid ones."""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logging.getLogger(__name__).warning("Ignoring redact pattern %r: %s", pattern, e)
    return compiled


def redact_string(text: str, patterns: Sequence[str | re.Pattern[str]]) -> str:
    """Replace all matches of the given regex patterns with [REDACTED]."""
    for pattern in patterns:
        if isinstance(pattern, str):
            try:
                pattern = re.compile(pattern)
            except re.error:
                continue
        text = pattern.sub(REDACTED, text)
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that redacts sensitive patterns from log records."""

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._patterns = compile_patterns(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._patterns:
            return True
        if record.args:
            # Format first so secrets split between msg and args are caught
            record.msg = redact_string(record.getMessage(), self._patterns)
            record.args = None
        else:
            record.msg = redact_string(str(record.msg), self._patterns)
        return True
