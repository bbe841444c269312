"""Error taxonomy for Keeper Commander invocations.

``resets_session`` marks the failures after which the persistent shell's
internal state is unknown; the service tears everything down before the
error reaches the caller.
"""

from __future__ import annotations

from typing import Optional


class CommanderError(Exception):
    """Base class for every failure talking to Keeper Commander."""

    resets_session = False
    kind = "CommanderError"


class NotInstalledError(CommanderError):
    """The ``keeper`` executable is missing or does not answer ``--version``."""

    kind = "NotInstalled"


class NotAuthenticatedError(CommanderError):
    """Neither persistent login nor biometric login is available."""

    kind = "NotAuthenticated"


class CommandBlockedError(CommanderError):
    """Raised when another command is already in flight on the shell."""

    kind = "CommandBlocked"

    def __init__(self, message: str = "Another Keeper command is still running. Try again shortly.") -> None:
        super().__init__(message)


class ProcessError(CommanderError):
    """The shell process could not be spawned or its pipes broke."""

    resets_session = True
    kind = "ProcessError"


class ProcessExitError(CommanderError):
    """The shell process exited while the bridge depended on it."""

    resets_session = True
    kind = "ProcessExit"

    def __init__(self, returncode: Optional[int]) -> None:
        super().__init__(f"Keeper shell exited with code {returncode}")
        self.returncode = returncode


class AuthenticationExpiredError(CommanderError):
    """The shell reported that the login session is gone mid-command."""

    resets_session = True
    kind = "AuthenticationExpired"


class ReadinessTimeoutError(CommanderError):
    """The shell never printed its idle prompt."""

    resets_session = True
    kind = "ReadinessTimeout"


class CommandTimeoutError(CommanderError):
    """A command hit the hard ceiling timeout."""

    resets_session = True
    kind = "CommandTimeout"


class RealCommandError(CommanderError):
    """Keeper Commander itself reported a failure on stderr."""

    kind = "RealCommandError"
