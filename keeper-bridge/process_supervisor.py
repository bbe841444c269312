"""Ownership of the long-lived ``keeper shell`` process.

The supervisor holds exactly one ``ShellSession`` at a time. Spawning swaps
in a fresh session; ``reset()`` swaps in an empty one and closes the old
session, which wakes anything still waiting on it. Reader threads pump the
process pipes into ``OutputChannel``s that callers subscribe to for the
duration of a single wait.
"""

from __future__ import annotations

import codecs
import logging
import os
import signal
import subprocess
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from bridge_config import BridgeConfig
from commander_errors import CommanderError, ProcessError, ProcessExitError, ReadinessTimeoutError
from readiness import ReadinessDetector

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096


class OutputChannel:
    """Fans decoded chunks from one pipe out to scoped subscribers."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callable[[str], None]] = []
        self._lock = threading.Lock()

    @contextmanager
    def subscribe(self, callback: Callable[[str], None]) -> Iterator[None]:
        with self._lock:
            self._subscribers.append(callback)
        try:
            yield
        finally:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, chunk: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(chunk)


@dataclass
class ShellSession:
    """Process handle, readiness and busy flag of one shell instance."""

    process: Optional[subprocess.Popen] = None
    readiness: Optional[ReadinessDetector] = None
    ready: bool = False
    busy: bool = False
    stdout: OutputChannel = field(default_factory=lambda: OutputChannel("stdout"))
    stderr: OutputChannel = field(default_factory=lambda: OutputChannel("stderr"))
    closed: threading.Event = field(default_factory=threading.Event)
    close_reason: Optional[CommanderError] = None

    @property
    def alive(self) -> bool:
        return (
            self.process is not None
            and not self.closed.is_set()
            and self.process.poll() is None
        )

    def close(self, reason: CommanderError) -> None:
        if self.closed.is_set():
            return
        self.close_reason = reason
        self.ready = False
        self.busy = False
        if self.readiness is not None:
            self.readiness.reject(reason)
        self.closed.set()


class ProcessSupervisor:
    """Spawns, watches and tears down the persistent Keeper shell."""

    def __init__(
        self,
        config: BridgeConfig,
        on_failure: Callable[[CommanderError], None],
    ) -> None:
        self.config = config
        self._on_failure = on_failure
        self._session = ShellSession()
        self._lock = threading.RLock()
        self._spawn_lock = threading.Lock()

    @property
    def session(self) -> ShellSession:
        with self._lock:
            return self._session

    def shell_args(self) -> list[str]:
        """Command line for the persistent shell on this platform."""
        executable = self.config.commander.executable
        shell = self.config.commander.shell_command
        if sys.platform == "win32":
            # cmd resolves the keeper alias/shim that CreateProcess cannot
            return ["cmd", "/c", executable, shell]
        return [executable, shell]

    def ensure_ready(self) -> ShellSession:
        """Return a ready session, spawning and waiting for one if needed."""
        with self._spawn_lock:
            session = self.session
            if session.ready and session.alive:
                return session
            if session.process is not None:
                self.reset(ProcessError("Discarding Keeper shell that never became ready"))

            session = self._spawn()
            with session.stdout.subscribe(session.readiness.feed):
                self._start_readers(session)
                self._await_ready(session)
            return session

    def _spawn(self) -> ShellSession:
        args = self.shell_args()
        logger.info("Spawning persistent shell: %s", " ".join(args))
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            error = ProcessError(f"Failed to start Keeper shell: {e}")
            logger.error("%s", error)
            self._on_failure(error)
            raise error from e

        session = ShellSession(
            process=proc,
            readiness=ReadinessDetector(
                self.config.protocol.idle_marker,
                self.config.timeouts.readiness_timeout_seconds,
            ),
        )
        with self._lock:
            self._session = session
        logger.debug("Keeper shell PID: %s", proc.pid)
        return session

    def _start_readers(self, session: ShellSession) -> None:
        proc = session.process
        for pipe, channel, watch_exit in (
            (proc.stdout, session.stdout, True),
            (proc.stderr, session.stderr, False),
        ):
            thread = threading.Thread(
                target=self._pump,
                args=(session, pipe, channel, watch_exit),
                name=f"keeper-shell-{channel.name}",
                daemon=True,
            )
            thread.start()

    def _await_ready(self, session: ShellSession) -> None:
        try:
            session.readiness.wait()
        except ReadinessTimeoutError as e:
            logger.error("%s", e)
            self._on_failure(e)
            raise

        with self._lock:
            if session is not self._session or session.closed.is_set():
                raise session.close_reason or ProcessError(
                    "Keeper shell was reset while starting"
                )
            session.ready = True
        logger.info("Keeper shell ready")

    def _pump(
        self,
        session: ShellSession,
        pipe,
        channel: OutputChannel,
        watch_exit: bool,
    ) -> None:
        """Drain a pipe into its channel (reader thread)."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = pipe.read1(READ_CHUNK_BYTES)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    channel.publish(text)
        except (OSError, ValueError) as e:
            logger.debug("Keeper shell %s closed: %s", channel.name, e)

        if watch_exit:
            self._watch_exit(session)

    def _watch_exit(self, session: ShellSession) -> None:
        returncode = session.process.wait()
        with self._lock:
            current = session is self._session and not session.closed.is_set()
        if current:
            logger.warning("Keeper shell exited unexpectedly (code %s)", returncode)
            self._on_failure(ProcessExitError(returncode))

    def try_acquire(self, session: ShellSession) -> bool:
        """Set the busy flag if no other command holds it."""
        with self._lock:
            if session.busy or not session.ready or session.closed.is_set():
                return False
            session.busy = True
            return True

    def release(self, session: ShellSession) -> None:
        with self._lock:
            session.busy = False

    def send(self, session: ShellSession, text: str) -> None:
        """Write raw text to the shell's stdin."""
        try:
            session.process.stdin.write(text.encode("utf-8"))
            session.process.stdin.flush()
        except (OSError, ValueError, AttributeError) as e:
            raise ProcessError(f"Failed to write to Keeper shell: {e}") from e

    def reset(self, reason: Optional[CommanderError] = None) -> None:
        """Close the current session and kill its process. Idempotent."""
        with self._lock:
            session = self._session
            self._session = ShellSession()
            session.close(reason or ProcessError("Keeper shell was reset"))
        if session.process is not None:
            logger.debug("Stopping Keeper shell PID %s", session.process.pid)
            self._terminate(session.process)

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        if proc.poll() is None:
            _kill_process_tree(proc.pid)
            try:
                proc.kill()
            except OSError:
                pass
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("Keeper shell PID %s did not exit after kill", proc.pid)


def _kill_process_tree(pid: int) -> None:
    """Kill a process and its children by PID."""
    if sys.platform == "win32":
        try:
            result = subprocess.run(
                ["taskkill", "/F", "/PID", str(pid), "/T"],
                capture_output=True, text=True, timeout=10,
            )
            if result.returncode != 0:
                logger.warning(
                    "taskkill PID %d failed (rc=%d): %s",
                    pid, result.returncode, result.stderr[:200],
                )
        except Exception as e:
            logger.warning("taskkill PID %d exception: %s", pid, e)
    else:
        try:
            os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            pass
