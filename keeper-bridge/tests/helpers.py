"""Shared test helpers for the Keeper Commander bridge test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers:
a fake ``keeper shell`` process for persistent-mode tests and
``subprocess.run`` dispatchers for one-shot invocations.
"""

import json
import queue
import subprocess
import threading
from typing import Callable, Optional
from unittest.mock import MagicMock

PROMPT = "My Vault> "
BANNER = "Keeper Commander shell\nType h for help\n" + PROMPT


# --- Fake persistent shell ---

class FakePipe:
    """Byte pipe whose ``read1`` blocks until the test feeds data."""

    def __init__(self) -> None:
        self._chunks: queue.Queue = queue.Queue()

    def feed(self, text: str) -> None:
        self._chunks.put(text.encode("utf-8"))

    def close(self) -> None:
        self._chunks.put(b"")

    def read1(self, size: int = -1) -> bytes:
        return self._chunks.get()


class FakeStdin:
    """Records every write and hands it to the owning process."""

    def __init__(self, on_write: Callable[[str], None]) -> None:
        self.writes: list[str] = []
        self.closed = False
        self._on_write = on_write

    def write(self, data: bytes) -> int:
        if self.closed:
            raise BrokenPipeError("stdin is closed")
        text = data.decode("utf-8")
        self.writes.append(text)
        self._on_write(text)
        return len(data)

    def flush(self) -> None:
        pass


class FakeShellProcess:
    """Stand-in for ``subprocess.Popen(["keeper", "shell"], ...)``.

    ``responder(proc, text)`` is called for every stdin write and may emit
    output through ``emit``/``emit_err``.
    """

    def __init__(
        self,
        responder: Optional[Callable[["FakeShellProcess", str], None]] = None,
        banner: Optional[str] = BANNER,
        pid: int = 99999,
    ) -> None:
        self.pid = pid
        self.returncode: Optional[int] = None
        self.stdout = FakePipe()
        self.stderr = FakePipe()
        self.stdin = FakeStdin(self._handle_input)
        self._responder = responder
        self._exited = threading.Event()
        if banner:
            self.stdout.feed(banner)

    @property
    def writes(self) -> list[str]:
        return self.stdin.writes

    def _handle_input(self, text: str) -> None:
        if self._responder is not None:
            self._responder(self, text)

    def emit(self, text: str) -> None:
        self.stdout.feed(text)

    def emit_err(self, text: str) -> None:
        self.stderr.feed(text)

    def exit(self, code: int = 0) -> None:
        if self._exited.is_set():
            return
        self.returncode = code
        self.stdin.closed = True
        self.stdout.close()
        self.stderr.close()
        self._exited.set()

    def poll(self) -> Optional[int]:
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired("keeper shell", timeout)
        return self.returncode

    def kill(self) -> None:
        self.exit(-9)


def scripted_responder(replies: dict[str, str], prompt: str = PROMPT):
    """Answer known command lines with their output followed by the prompt.

    Unknown lines get no answer, so the command waits until it times out.
    """
    def respond(proc: FakeShellProcess, text: str) -> None:
        line = text.strip()
        if line in replies:
            proc.emit(replies[line] + "\n" + prompt)
    return respond


def make_popen_factory(*procs: FakeShellProcess):
    """Create a side_effect for subprocess.Popen returning each proc in turn."""
    remaining = list(procs)

    def factory(*args, **kwargs):
        return remaining.pop(0)
    return factory


# --- One-shot (subprocess.run) helpers ---

def completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    """Build a mock subprocess.run result."""
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


def make_keeper_dispatcher(
    replies: Optional[dict[str, MagicMock]] = None,
    side_effects: Optional[dict[str, Exception]] = None,
    calls: Optional[list[list[str]]] = None,
):
    """Create a subprocess.run mock that dispatches on ``keeper <command>``.

    Keys are the argv after the executable joined by spaces, or just the
    command name to match any arguments. Unmatched commands succeed with
    empty output.
    """
    replies = replies or {}
    side_effects = side_effects or {}

    def side_effect(*args, **kwargs):
        cmd = args[0] if args else kwargs.get("args", [])
        if calls is not None:
            calls.append(list(cmd))
        full = " ".join(cmd[1:])
        name = cmd[1] if len(cmd) > 1 else ""
        for key in (full, name):
            if key in side_effects:
                raise side_effects[key]
            if key in replies:
                return replies[key]
        return completed()

    return side_effect


def healthy_keeper_replies(**extra: MagicMock) -> dict[str, MagicMock]:
    """Installed and logged in with Persistent Login."""
    replies = {
        "--version": completed("Keeper Commander, version 16.11.0\n"),
        "this-device": completed(
            "Device Name: bridge-test\nPersistent Login: ON\nLogout Timeout: 30 days\n"
        ),
    }
    replies.update(extra)
    return replies


def folders_json(*folders: tuple[str, str, str]) -> str:
    """``ls --format=json -f -R`` output for (uid, name, parent_uid) tuples."""
    return json.dumps([
        {"folder_uid": uid, "name": name, "parent_uid": parent}
        for uid, name, parent in folders
    ])
