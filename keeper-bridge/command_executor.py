"""Single-flight command execution against the persistent Keeper shell.

The shell has no framing: a command is finished only when its output has
been quiet for ``quiet_interval_seconds`` *and* the accumulated stdout ends
with the idle prompt. The prompt alone is not enough because it can be
printed before the command's output has fully arrived.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Sequence

from bridge_config import BridgeConfig
from commander_errors import (
    AuthenticationExpiredError,
    CommandBlockedError,
    CommanderError,
    CommandTimeoutError,
    ProcessError,
    RealCommandError,
)
from output_sanitizer import clean, is_real_error
from process_supervisor import ProcessSupervisor, ShellSession

logger = logging.getLogger(__name__)


def format_command_line(command: str, args: Sequence[str] = ()) -> str:
    """Render one shell input line, newline-terminated."""
    return " ".join([command, *args]) + "\n"


def extract_command_output(text: str, marker: str) -> str:
    """Return the text before the last idle prompt, trimmed."""
    index = text.rfind(marker)
    if index == -1:
        return text.strip()
    return text[:index].strip()


class _PendingCommand:
    """Output accumulated for the one command currently in flight."""

    def __init__(self, line: str, config: BridgeConfig) -> None:
        self.line = line
        self._protocol = config.protocol
        self._lock = threading.Lock()
        self.stdout = ""
        self.stderr = ""
        self.started_at = time.monotonic()
        self.last_chunk_at = self.started_at
        self.biometric_seen = False
        self.biometric_retried = False
        self.unauthenticated = False

    def _scan(self, buffer: str, chunk: str) -> None:
        # Look back into the buffer so a marker split across reads still matches
        for marker in self._protocol.unauthenticated_markers:
            window = buffer[-(len(chunk) + len(marker)):]
            if marker in window:
                self.unauthenticated = True
                return

    def on_stdout(self, chunk: str) -> None:
        with self._lock:
            self.stdout += chunk
            self.last_chunk_at = time.monotonic()
            self._scan(self.stdout, chunk)
            if not self.biometric_retried and self._protocol.biometric_prompt in self.stdout:
                self.biometric_seen = True

    def on_stderr(self, chunk: str) -> None:
        with self._lock:
            self.stderr += chunk
            self.last_chunk_at = time.monotonic()
            self._scan(self.stderr, chunk)

    def restart(self) -> None:
        """Forget output from the interrupted attempt."""
        with self._lock:
            self.biometric_retried = True
            self.biometric_seen = False
            self.stdout = ""
            self.stderr = ""
            self.last_chunk_at = time.monotonic()

    def is_complete(self, now: float, quiet_interval: float) -> bool:
        with self._lock:
            quiet = now - self.last_chunk_at >= quiet_interval
            return quiet and self.stdout.rstrip().endswith(self._protocol.idle_marker)

    def snapshot(self) -> tuple[str, str]:
        with self._lock:
            return self.stdout, self.stderr


class CommandExecutor:
    """Runs one command at a time through the supervisor's shell."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        config: BridgeConfig,
        on_failure: Callable[[CommanderError], None],
    ) -> None:
        self.supervisor = supervisor
        self.config = config
        self._on_failure = on_failure

    def execute(self, command: str, args: Sequence[str] = ()) -> str:
        """Send ``command`` to the shell and return its raw output."""
        session = self.supervisor.ensure_ready()
        if not self.supervisor.try_acquire(session):
            if session.closed.is_set():
                raise session.close_reason or ProcessError("Keeper shell was reset")
            raise CommandBlockedError()

        try:
            return self._run(session, command, args)
        finally:
            self.supervisor.release(session)

    def _run(self, session: ShellSession, command: str, args: Sequence[str]) -> str:
        pending = _PendingCommand(format_command_line(command, args), self.config)
        logger.debug("Shell command: %s", pending.line.rstrip())
        try:
            with session.stdout.subscribe(pending.on_stdout), session.stderr.subscribe(
                pending.on_stderr
            ):
                self._send(session, pending.line)
                self._wait_for_completion(session, pending)
        except CommanderError:
            raise
        except Exception as e:
            error = ProcessError(f"Command execution failed: {e}")
            self._fail(error)
            raise error from e

        stdout, stderr = pending.snapshot()
        if is_real_error(stderr):
            message = clean(stderr)
            logger.error("Keeper command '%s' failed: %s", command, message)
            raise RealCommandError(message)
        return extract_command_output(stdout, self.config.protocol.idle_marker)

    def _wait_for_completion(self, session: ShellSession, pending: _PendingCommand) -> None:
        timeouts = self.config.timeouts
        deadline = pending.started_at + timeouts.command_timeout_seconds

        while not session.closed.wait(timeouts.poll_interval_seconds):
            if pending.unauthenticated:
                error = AuthenticationExpiredError(
                    "Keeper session has expired. Log in again with Persistent Login enabled."
                )
                logger.warning("%s", error)
                self._fail(error)
                raise error

            if pending.biometric_seen and not pending.biometric_retried:
                logger.info("Biometric prompt detected; interrupting and re-sending command")
                pending.restart()
                self._send(session, self.config.protocol.interrupt)
                if session.closed.wait(timeouts.biometric_retry_delay_seconds):
                    break
                self._send(session, pending.line)
                continue

            now = time.monotonic()
            if now >= deadline:
                error = CommandTimeoutError(
                    f"Keeper command timed out after {timeouts.command_timeout_seconds:.0f}s. "
                    "Reload and try again."
                )
                logger.error("%s", error)
                self._fail(error)
                raise error

            if pending.is_complete(now, timeouts.quiet_interval_seconds):
                return

        raise session.close_reason or ProcessError("Keeper shell was reset")

    def _send(self, session: ShellSession, text: str) -> None:
        try:
            self.supervisor.send(session, text)
        except ProcessError as e:
            logger.error("%s", e)
            self._fail(e)
            raise

    def _fail(self, error: CommanderError) -> None:
        self._on_failure(error)
