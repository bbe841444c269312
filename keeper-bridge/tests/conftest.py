"""Shared pytest fixtures for the Keeper Commander bridge test suite.

Non-fixture helpers (fake shell process, subprocess.run dispatchers) are in
helpers.py.
"""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from bridge_config import BridgeConfig  # noqa: E402


@pytest.fixture(autouse=True)
def no_process_kill():
    """Fake shells carry fake PIDs; never signal a real process."""
    with patch("process_supervisor._kill_process_tree") as mock_kill:
        yield mock_kill


@pytest.fixture
def config(tmp_path: Path) -> BridgeConfig:
    """Config with short waits so persistent-mode tests finish quickly."""
    return BridgeConfig(
        timeouts={
            "readiness_timeout_seconds": 2.0,
            "quiet_interval_seconds": 0.05,
            "command_timeout_seconds": 2.0,
            "auth_probe_timeout_seconds": 1.0,
            "reset_interval_seconds": 600.0,
            "biometric_retry_delay_seconds": 0.01,
            "poll_interval_seconds": 0.01,
        },
        storage={"state_path": str(tmp_path / "storage.json")},
    )
