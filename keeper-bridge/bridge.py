"""Command-line front end for the Keeper Commander bridge.

Usage:
    python bridge.py status
    python bridge.py exec list --format=json
    python bridge.py fields <record_uid>
    python bridge.py save --name "Stripe" --field api_key --value sk_live_...
    python bridge.py run --env-file .env -- python manage.py runserver
    python bridge.py repl            # keep one shell open, one command per line
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence, TextIO

from bridge_config import DEFAULT_CONFIG_PATH, BridgeConfig, load_config
from cli_service import CliService, ConsoleNotifier
from commander_errors import CommandBlockedError, CommanderError, NotAuthenticatedError
from log_redactor import RedactingFilter
from storage_manager import StorageManager
import vault_commands

logger = logging.getLogger(__name__)

# Exit codes
EXIT_OK = 0
EXIT_COMMAND_FAILED = 1
EXIT_NOT_READY = 2
EXIT_CONFIG_ERROR = 3


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps({
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        })


def configure_logging(verbose: bool, json_log: bool, redact_patterns: Sequence[str]) -> None:
    """Root logging to stderr with secret redaction on every handler."""
    log_level = logging.DEBUG if verbose else logging.INFO
    if json_log:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
        logging.root.addHandler(handler)
        logging.root.setLevel(log_level)
    else:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    for handler in logging.root.handlers:
        handler.addFilter(RedactingFilter(redact_patterns))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reliable request/response bridge to the Keeper Commander CLI"
    )
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--executable", default=None, help="Keeper Commander executable")
    parser.add_argument("--legacy-only", action="store_true", help="Run every command one-shot")
    parser.add_argument("--open-docs", action="store_true", help="Open remediation docs in a browser")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")

    sub = parser.add_subparsers(dest="action", required=True)
    sub.add_parser("status", help="Check installation and authentication")

    p = sub.add_parser("exec", help="Run one Commander command")
    p.add_argument("command")
    p.add_argument("args", nargs=argparse.REMAINDER)

    sub.add_parser("records", help="List vault records")

    p = sub.add_parser("fields", help="List keeper references for a record")
    p.add_argument("record_uid")

    p = sub.add_parser("save", help="Save a secret value as a new record")
    p.add_argument("--name", required=True, help="Record title")
    p.add_argument("--field", required=True, help="Custom field name")
    p.add_argument("--value", default=None, help="Secret value (read from stdin if omitted)")

    p = sub.add_parser("generate", help="Generate and save a password")
    p.add_argument("--name", required=True, help="Record title")
    p.add_argument("--field", required=True, help="Custom field name")

    sub.add_parser("folders", help="List vault folders usable as storage")

    p = sub.add_parser("use-folder", help="Select the storage folder for new secrets")
    p.add_argument("folder", help="Folder uid, name or path")

    p = sub.add_parser("run", help="Run a command with keeper references resolved")
    p.add_argument("--env-file", default=".env")
    p.add_argument("cmd", nargs=argparse.REMAINDER)

    sub.add_parser("repl", help="Read Commander commands from stdin, one per line")
    return parser


def _print_json(data, out: TextIO) -> None:
    print(json.dumps(data, indent=2), file=out)


def run_repl(service: CliService, stdin: TextIO, out: TextIO) -> int:
    """Execute each stdin line through the service until EOF or 'quit'."""
    failures = 0
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        if line in ("quit", "exit", "q"):
            break
        command, *args = line.split()
        try:
            print(service.execute_commander_command(command, args), file=out)
        except CommandBlockedError as e:
            print(f"BLOCKED: {e}", file=out)
            failures += 1
        except CommanderError as e:
            print(f"ERROR: {e}", file=out)
            failures += 1
    return EXIT_OK if failures == 0 else EXIT_COMMAND_FAILED


def dispatch(
    args: argparse.Namespace,
    service: CliService,
    storage: StorageManager,
    out: TextIO,
) -> int:
    if args.action == "status":
        ready = service.is_cli_ready()
        _print_json(service.status(), out)
        return EXIT_OK if ready else EXIT_NOT_READY

    if args.action == "exec":
        service.is_cli_ready()
        print(service.execute_commander_command(args.command, args.args), file=out)
        return EXIT_OK

    if args.action == "records":
        _print_json(vault_commands.list_records(service), out)
        return EXIT_OK

    if args.action == "fields":
        for reference in vault_commands.list_fields(service, args.record_uid):
            print(reference, file=out)
        return EXIT_OK

    if args.action == "save":
        value = args.value if args.value is not None else sys.stdin.read().rstrip("\n")
        print(vault_commands.save_value(service, storage, args.name, args.field, value), file=out)
        return EXIT_OK

    if args.action == "generate":
        print(vault_commands.generate_password(service, storage, args.name, args.field), file=out)
        return EXIT_OK

    if args.action == "folders":
        if not service.is_cli_ready():
            return EXIT_NOT_READY
        current = storage.get_current_storage()
        for folder in storage.list_folders():
            marker = "*" if current and current.folder_uid == folder.folder_uid else " "
            print(f"{marker} {folder.folder_uid}\t{folder.folder_path}", file=out)
        return EXIT_OK

    if args.action == "use-folder":
        if not service.is_cli_ready():
            return EXIT_NOT_READY
        folder = storage.choose_folder(args.folder)
        print(f'Storage location set to "{folder.name}" folder', file=out)
        return EXIT_OK

    if args.action == "run":
        cmd = args.cmd[1:] if args.cmd[:1] == ["--"] else args.cmd
        return vault_commands.run_securely(service, cmd, args.env_file)

    if args.action == "repl":
        service.is_cli_ready()
        return run_repl(service, sys.stdin, out)

    raise ValueError(f"Unknown action: {args.action}")


def main(argv: Optional[Sequence[str]] = None, out: Optional[TextIO] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    out = out or sys.stdout

    config_path = args.config or os.environ.get("KEEPER_BRIDGE_CONFIG") or DEFAULT_CONFIG_PATH
    config_result = load_config(config_path)
    config: BridgeConfig = config_result.data if config_result.success else BridgeConfig()
    configure_logging(args.verbose, args.json_log, config.security.log_redact_patterns)
    if not config_result.success:
        logger.error("Config error: %s", config_result.error)
        return EXIT_CONFIG_ERROR

    # Apply CLI overrides
    if args.executable is not None:
        config.commander.executable = args.executable
    if args.legacy_only:
        config.commander.legacy_only = True

    service = CliService(config, ConsoleNotifier(open_links=args.open_docs))
    storage = StorageManager(Path(config.storage.state_path).expanduser(), service)
    load_result = storage.load()
    if not load_result.success:
        logger.warning("Ignoring storage state: %s", load_result.error)

    try:
        return dispatch(args, service, storage, out)
    except NotAuthenticatedError:
        return EXIT_NOT_READY
    except (CommanderError, LookupError, ValueError, FileNotFoundError) as e:
        logger.error("%s", e)
        return EXIT_COMMAND_FAILED
    finally:
        service.dispose()


if __name__ == "__main__":
    sys.exit(main())
