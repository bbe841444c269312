"""One-shot detection of the Keeper shell's idle prompt.

A detector is created for each spawned shell process. It is fed stdout
chunks while subscribed and resolves the first time the idle marker shows
up. Detection is a plain substring match, so a record or folder whose name
contains the marker can make the shell look ready early.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from commander_errors import CommanderError, ReadinessTimeoutError

logger = logging.getLogger(__name__)


class ReadinessDetector:
    """Resolves once per process when ``marker`` appears in the output."""

    def __init__(self, marker: str, timeout: float) -> None:
        self.marker = marker
        self.timeout = timeout
        self.started_at = time.monotonic()
        self._event = threading.Event()
        self._error: Optional[CommanderError] = None
        self._tail = ""

    @property
    def resolved(self) -> bool:
        return self._event.is_set() and self._error is None

    def feed(self, chunk: str) -> None:
        """Subscriber callback for stdout chunks."""
        if self._event.is_set():
            return
        # Keep a short tail so a marker split across two reads still matches
        window = self._tail + chunk
        if self.marker in window:
            logger.debug("Keeper shell idle prompt observed")
            self._event.set()
            return
        self._tail = window[-len(self.marker):]

    def reject(self, error: CommanderError) -> None:
        """Fail a pending wait (session reset while starting up)."""
        if self._event.is_set():
            return
        self._error = error
        self._event.set()

    def wait(self) -> None:
        """Block until resolved; raise on rejection or after the window."""
        remaining = self.timeout - (time.monotonic() - self.started_at)
        if not self._event.wait(max(remaining, 0)):
            raise ReadinessTimeoutError(
                f"Keeper shell was not ready after {self.timeout:.0f}s"
            )
        if self._error is not None:
            raise self._error
