"""Tests for readiness module."""

import threading

import pytest

from commander_errors import ProcessError, ReadinessTimeoutError
from readiness import ReadinessDetector

MARKER = "My Vault>"


class TestReadinessDetector:
    def test_resolves_on_marker(self) -> None:
        detector = ReadinessDetector(MARKER, timeout=1.0)
        detector.feed("Keeper Commander shell\n")
        assert detector.resolved is False
        detector.feed("My Vault> ")
        assert detector.resolved is True
        detector.wait()

    def test_marker_split_across_chunks(self) -> None:
        detector = ReadinessDetector(MARKER, timeout=1.0)
        detector.feed("banner\nMy Va")
        detector.feed("ult> ")
        assert detector.resolved is True

    def test_feed_after_resolution_is_noop(self) -> None:
        detector = ReadinessDetector(MARKER, timeout=1.0)
        detector.feed(MARKER)
        detector.feed("anything else")
        detector.reject(ProcessError("late"))
        detector.wait()
        assert detector.resolved is True

    def test_timeout(self) -> None:
        detector = ReadinessDetector(MARKER, timeout=0.05)
        detector.feed("still syncing")
        with pytest.raises(ReadinessTimeoutError, match="not ready"):
            detector.wait()

    def test_reject_wakes_waiter(self) -> None:
        detector = ReadinessDetector(MARKER, timeout=5.0)
        errors: list[Exception] = []

        def waiter() -> None:
            try:
                detector.wait()
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=waiter)
        thread.start()
        detector.reject(ProcessError("shell reset"))
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert isinstance(errors[0], ProcessError)
        assert detector.resolved is False

    def test_marker_inside_data_resolves(self) -> None:
        """Substring detection: a folder named after the prompt counts."""
        detector = ReadinessDetector(MARKER, timeout=1.0)
        detector.feed("Folder: Backup of My Vault> old\n")
        assert detector.resolved is True
