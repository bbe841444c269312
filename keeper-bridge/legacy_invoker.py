"""One-shot ``keeper <command> <args...>`` invocations."""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import Optional, Sequence

from bridge_config import BridgeConfig
from commander_errors import CommandTimeoutError, NotInstalledError, RealCommandError
from output_sanitizer import clean, is_real_error

logger = logging.getLogger(__name__)


class LegacyInvoker:
    """Runs each command as its own Keeper Commander process."""

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config

    def build_args(self, command: str, args: Sequence[str] = ()) -> list[str]:
        """argv for one invocation; args are tokenized the way the shell would."""
        try:
            tokens = shlex.split(" ".join(args))
        except ValueError as e:
            raise RealCommandError(f"Cannot parse arguments for '{command}': {e}") from e
        return [self.config.commander.executable, command, *tokens]

    def run_raw(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        """Run the command to completion and return the unprocessed result."""
        argv = self.build_args(command, args)
        logger.debug("Legacy command: %s", " ".join(argv))
        try:
            return subprocess.run(
                argv,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.DEVNULL,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise NotInstalledError(
                f"'{argv[0]}' not found on PATH. Install Keeper Commander CLI."
            ) from e
        except subprocess.TimeoutExpired as e:
            raise CommandTimeoutError(
                f"Keeper command '{command}' timed out after {timeout:.0f}s"
            ) from e

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
    ) -> str:
        """Run the command and return sanitized stdout; raise on real errors."""
        try:
            result = self.run_raw(command, args, timeout=timeout)
        except Exception as e:
            logger.error("Legacy commander command failed: %s", e)
            raise

        stderr = result.stderr or ""
        if is_real_error(stderr):
            message = clean(stderr)
            logger.error("Legacy commander command failed: %s", message)
            raise RealCommandError(message)

        output = clean(result.stdout or "")
        if result.returncode != 0:
            detail = clean(stderr) or output or "no output"
            logger.error(
                "Legacy commander command '%s' exited with code %d", command, result.returncode
            )
            raise RealCommandError(
                f"keeper {command} exited with code {result.returncode}: {detail}"
            )
        return output
