"""Configuration validation for the Keeper Commander bridge."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG_PATH = Path.home() / ".keeper-bridge" / "config.json"


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class CommanderConfig(BaseModel):
    """Keeper Commander executable and the commands used to probe it."""

    executable: str = Field(default="keeper")
    shell_command: str = Field(default="shell")
    version_command: str = Field(default="--version")
    device_status_command: str = Field(default="this-device")
    biometric_command: list[str] = Field(default_factory=lambda: ["biometric", "verify"])
    legacy_only: bool = Field(
        default=False,
        description="Never start the persistent shell; run every command one-shot",
    )


class ProtocolConfig(BaseModel):
    """Marker strings of the human-oriented shell protocol."""

    idle_marker: str = Field(default="My Vault>")
    biometric_prompt: str = Field(default="Press Ctrl+C to skip biometric")
    interrupt: str = Field(default="\x03")
    unauthenticated_markers: list[str] = Field(
        default_factory=lambda: [
            "Not logged in",
            "Session token expired",
            "You are not logged in",
        ]
    )
    persistent_login_marker: str = Field(default="Persistent Login: ON")
    biometric_success_marker: str = Field(default="Status: SUCCESSFUL")
    install_markers: list[str] = Field(
        default_factory=lambda: ["Keeper Commander", "version"]
    )


class TimeoutsConfig(BaseModel):
    """Bounded waits on the external process (seconds)."""

    readiness_timeout_seconds: float = Field(default=120.0, gt=0, le=1800)
    quiet_interval_seconds: float = Field(default=5.0, gt=0, le=120)
    command_timeout_seconds: float = Field(default=300.0, gt=0, le=3600)
    auth_probe_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    reset_interval_seconds: float = Field(
        default=600.0, gt=0,
        description="Full reset period while the persistent shell is armed",
    )
    biometric_retry_delay_seconds: float = Field(default=1.0, ge=0, le=30)
    poll_interval_seconds: float = Field(default=0.1, gt=0, le=5)


class DocsConfig(BaseModel):
    """Remediation links shown when the CLI is missing or logged out."""

    installation_url: str = Field(
        default="https://docs.keeper.io/en/keeperpam/commander-cli/commander-installation-setup"
    )
    authentication_url: str = Field(
        default="https://docs.keeper.io/en/keeperpam/commander-cli/commander-installation-setup/logging-in"
    )


class StorageConfig(BaseModel):
    """Where the selected storage folder is persisted."""

    state_path: Path = Field(default=Path.home() / ".keeper-bridge" / "storage.json")


class SecurityConfig(BaseModel):
    """Security and redaction settings."""

    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"c\.(?:secret|text)\.[^=']*=[^']*",
            r"(?i)(?<=password=)\S+",
            r"(?i)(?<=--pass[ =])\S+",
        ]
    )


class BridgeConfig(BaseModel):
    """Root configuration model for ~/.keeper-bridge/config.json."""

    commander: CommanderConfig = Field(default_factory=CommanderConfig)
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    docs: DocsConfig = Field(default_factory=DocsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)


def load_config(config_path: str | Path) -> Result[BridgeConfig]:
    """Load and validate bridge config from JSON file."""
    path = Path(config_path)
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(BridgeConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = BridgeConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")
