"""Lifecycle of the Keeper Commander bridge.

``CliService`` lazily verifies that Keeper Commander is installed and logged
in, then routes commands through the persistent shell. Any failure of the
shell resets everything back to ``UNINITIALIZED``; until the next successful
``ensure_initialized()`` commands run one-shot through ``LegacyInvoker``.
"""

from __future__ import annotations

import logging
import sys
import threading
import webbrowser
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Optional, Sequence, TextIO

from bridge_config import BridgeConfig
from command_executor import CommandExecutor
from commander_errors import (
    AuthenticationExpiredError,
    CommandBlockedError,
    CommanderError,
    CommandTimeoutError,
    ReadinessTimeoutError,
)
from legacy_invoker import LegacyInvoker
from process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

CLI_NOT_INSTALLED = (
    "Keeper Commander CLI is not installed or not on PATH. "
    "Install it and try again."
)
CLI_NOT_AUTHENTICATED = (
    "Keeper Commander CLI is not authenticated. "
    "Log in with Persistent Login or Biometric Login enabled and try again."
)


class LifecycleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    PERSISTENT_READY = "persistent_ready"
    LEGACY_ONLY = "legacy_only"
    DISPOSED = "disposed"


class ConsoleNotifier:
    """Shows actionable messages to the person running the bridge (stderr)."""

    def __init__(self, stream: Optional[TextIO] = None, open_links: bool = False) -> None:
        self._stream = stream
        self.open_links = open_links

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stderr

    def info(self, message: str) -> None:
        print(message, file=self.stream)

    def error(self, message: str, action: Optional[str] = None, url: Optional[str] = None) -> None:
        print(f"ERROR: {message}", file=self.stream)
        if url:
            print(f"  {action or 'See'}: {url}", file=self.stream)
            if self.open_links:
                webbrowser.open(url)


class CliService:
    """Lazy init, persistent/legacy routing and full resets."""

    def __init__(
        self,
        config: BridgeConfig,
        notifier: Optional[ConsoleNotifier] = None,
    ) -> None:
        self.config = config
        self.notifier = notifier or ConsoleNotifier()
        self.legacy = LegacyInvoker(config)
        self.supervisor = ProcessSupervisor(config, on_failure=self._handle_failure)
        self.executor = CommandExecutor(self.supervisor, config, on_failure=self._handle_failure)

        self.state = LifecycleState.UNINITIALIZED
        self.is_installed = False
        self.is_authenticated = False
        self._initialized = False
        self._reset_timer: Optional[threading.Timer] = None
        self._lock = threading.RLock()
        self._init_lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def use_persistent(self) -> bool:
        return self.state is LifecycleState.PERSISTENT_READY

    # --- Initialization ---

    def is_cli_ready(self) -> bool:
        """True once Keeper Commander is installed and authenticated."""
        self._check_disposed()
        return self.ensure_initialized()

    def ensure_initialized(self) -> bool:
        """Run the installation and authentication checks once."""
        with self._init_lock:
            with self._lock:
                self._check_disposed()
                if self._initialized:
                    return True
                self.state = LifecycleState.INITIALIZING

            logger.info("Initializing Keeper Commander CLI status...")
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="keeper-check") as pool:
                install_future = pool.submit(self.check_commander_installation)
                auth_future = pool.submit(self.check_commander_auth)
                installed = install_future.result()
                authenticated = auth_future.result()

            with self._lock:
                self.is_installed = installed
                self.is_authenticated = authenticated
                if not (installed and authenticated):
                    self.state = LifecycleState.LEGACY_ONLY
                else:
                    self._initialized = True
                    if self.config.commander.legacy_only:
                        self.state = LifecycleState.LEGACY_ONLY
                    else:
                        self.state = LifecycleState.PERSISTENT_READY
                        self._arm_reset_timer()

        if not installed:
            logger.error("Keeper Commander CLI is not installed")
            self.prompt_installation_error()
            return False
        if not authenticated:
            self.prompt_authentication_error()
            return False

        logger.info("Keeper Commander bridge ready (%s)", self.state.value)
        return True

    def check_commander_installation(self) -> bool:
        timeout = self.config.timeouts.auth_probe_timeout_seconds
        try:
            stdout = self.legacy.run(self.config.commander.version_command, timeout=timeout)
        except CommanderError as e:
            logger.error("Keeper Commander CLI Installation check failed: %s", e)
            return False

        lowered = stdout.lower()
        installed = any(m.lower() in lowered for m in self.config.protocol.install_markers)
        logger.info("Keeper Commander CLI Installed: %s", "YES" if installed else "NO")
        return installed

    def check_commander_auth(self) -> bool:
        """Persistent login first, then a biometric probe, each time-bounded."""
        timeout = self.config.timeouts.auth_probe_timeout_seconds
        try:
            stdout = self.legacy.run(self.config.commander.device_status_command, timeout=timeout)
            if self.config.protocol.persistent_login_marker in stdout:
                logger.info("Keeper Commander CLI Authenticated: YES (Persistent)")
                return True
        except CommanderError as e:
            logger.error("Keeper Commander CLI Authentication check failed: %s", e)

        if self.check_biometric_authentication():
            logger.info("Keeper Commander CLI Authenticated: YES (Biometric)")
            return True

        logger.info("Keeper Commander CLI Authenticated: NO")
        return False

    def check_biometric_authentication(self) -> bool:
        command, *args = self.config.commander.biometric_command
        timeout = self.config.timeouts.auth_probe_timeout_seconds
        try:
            stdout = self.legacy.run(command, args, timeout=timeout)
        except CommanderError as e:
            logger.error("Biometric authentication check failed: %s", e)
            return False
        return self.config.protocol.biometric_success_marker in stdout

    def prompt_installation_error(self) -> None:
        self.notifier.error(
            CLI_NOT_INSTALLED,
            action="Installation docs",
            url=self.config.docs.installation_url,
        )

    def prompt_authentication_error(self) -> None:
        self.notifier.error(
            CLI_NOT_AUTHENTICATED,
            action="Authentication docs",
            url=self.config.docs.authentication_url,
        )

    # --- Execution ---

    def execute_commander_command(self, command: str, args: Sequence[str] = ()) -> str:
        """Run a command; persistent shell when armed, one-shot otherwise."""
        self._check_disposed()
        if not self.use_persistent:
            logger.info("Using legacy mode for command: %s", command)
            return self._run_legacy(command, args)

        try:
            return self.executor.execute(command, args)
        except CommandBlockedError:
            raise
        except CommanderError as e:
            logger.warning(
                "Persistent execution of '%s' failed (%s); retrying once in legacy mode",
                command, e.kind,
            )
            try:
                return self._run_legacy(command, args)
            except CommanderError as legacy_error:
                logger.error("Legacy fallback for '%s' failed: %s", command, legacy_error)
                raise e from legacy_error

    def _run_legacy(self, command: str, args: Sequence[str]) -> str:
        return self.legacy.run(
            command, args, timeout=self.config.timeouts.command_timeout_seconds
        )

    # --- Reset ---

    def _handle_failure(self, error: CommanderError) -> None:
        """Failure callback for the supervisor and the executor."""
        if isinstance(error, AuthenticationExpiredError):
            self.notifier.error(
                str(error),
                action="Authentication docs",
                url=self.config.docs.authentication_url,
            )
        elif isinstance(error, (CommandTimeoutError, ReadinessTimeoutError)):
            self.notifier.error(f"{error} Reload the bridge if this keeps happening.")
        self.reset_cli_service(error)

    def reset_cli_service(self, reason: Optional[CommanderError] = None) -> None:
        """Cancel timers, kill the shell and clear every flag. Idempotent."""
        with self._lock:
            self._cancel_reset_timer()
            self.supervisor.reset(reason)
            self._initialized = False
            self.is_installed = False
            self.is_authenticated = False
            if self.state is not LifecycleState.DISPOSED:
                self.state = LifecycleState.UNINITIALIZED
        if reason is not None:
            logger.info("Keeper CLI service reset after %s", reason.kind)
        else:
            logger.info("Keeper CLI service reset")

    def _arm_reset_timer(self) -> None:
        self._cancel_reset_timer()
        interval = self.config.timeouts.reset_interval_seconds
        timer = threading.Timer(interval, lambda: self._on_reset_timer(timer))
        timer.daemon = True
        self._reset_timer = timer
        timer.start()
        logger.debug("Periodic reset armed (%.0fs)", interval)

    def _cancel_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _on_reset_timer(self, timer: threading.Timer) -> None:
        with self._lock:
            if timer is not self._reset_timer:
                return
        logger.info("Periodic reset of Keeper CLI service")
        self.reset_cli_service()

    # --- Teardown ---

    def status(self) -> dict:
        session = self.supervisor.session
        return {
            "state": self.state.value,
            "installed": self.is_installed,
            "authenticated": self.is_authenticated,
            "shell_ready": session.ready,
            "busy": session.busy,
        }

    def dispose(self) -> None:
        with self._lock:
            self.state = LifecycleState.DISPOSED
            self.reset_cli_service()

    def _check_disposed(self) -> None:
        if self.state is LifecycleState.DISPOSED:
            raise CommanderError("Keeper CLI service has been disposed")
