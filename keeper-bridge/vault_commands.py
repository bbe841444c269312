"""Vault operations built on ``CliService.execute_commander_command``.

Every operation checks ``is_cli_ready()`` first. Commands are issued one at
a time: the persistent shell rejects overlapping calls.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

from cli_service import CliService
from commander_errors import CommanderError, NotAuthenticatedError
from keeper_notation import (
    FieldType,
    create_keeper_reference,
    extract_field_value,
    field_label,
    parse_keeper_reference,
)
from storage_manager import StorageManager

logger = logging.getLogger(__name__)

LOGIN_RECORD_TYPE = "login"
SECRET_FIELD_HINTS = re.compile(r"pass|secret|key|token|credential|pwd", re.IGNORECASE)


def _require_ready(cli_service: CliService) -> None:
    if not cli_service.is_cli_ready():
        raise NotAuthenticatedError("Keeper Commander CLI is not ready")


def _load_json(output: str, what: str):
    try:
        return json.loads(output) if output.strip() else []
    except json.JSONDecodeError as e:
        raise CommanderError(f"Unexpected {what} output from Keeper Commander: {e}") from e


def custom_field_type(field_name: str) -> str:
    """``secret`` for names that look like credentials, else ``text``."""
    return "secret" if SECRET_FIELD_HINTS.search(field_name) else "text"


def list_records(cli_service: CliService) -> list[dict]:
    _require_ready(cli_service)
    records = _load_json(
        cli_service.execute_commander_command("list", ["--format=json"]), "record list"
    )
    return [{"title": r.get("title", ""), "record_uid": r["record_uid"]} for r in records]


def get_record(cli_service: CliService, record_uid: str) -> dict:
    output = cli_service.execute_commander_command("get", [record_uid, "--format=json"])
    record = _load_json(output, "record")
    return record if isinstance(record, dict) else {}


def list_fields(cli_service: CliService, record_uid: str) -> list[str]:
    """Keeper references for every non-empty field of a record."""
    _require_ready(cli_service)
    record = get_record(cli_service, record_uid)

    references: list[str] = []
    for section, field_type in (("fields", FieldType.FIELD), ("custom", FieldType.CUSTOM_FIELD)):
        for entry in record.get(section) or []:
            if not entry.get("value"):
                continue
            reference = create_keeper_reference(record_uid, field_type, field_label(entry))
            if reference:
                references.append(reference)
    return references


def _add_record(
    cli_service: CliService,
    storage: StorageManager,
    record_name: str,
    field_name: str,
    value: str,
    field_type: str,
) -> str:
    folder = storage.ensure_valid_storage()
    args = [
        shlex.quote(f"--title={record_name}"),
        f"--record-type={LOGIN_RECORD_TYPE}",
        shlex.quote(f"c.{field_type}.{field_name}={value}"),
    ]
    if not folder.is_root:
        args.append(shlex.quote(f"--folder={folder.folder_uid}"))

    record_uid = cli_service.execute_commander_command("record-add", args).strip()
    reference = create_keeper_reference(record_uid, FieldType.CUSTOM_FIELD, field_name)
    if reference is None:
        raise CommanderError(f"Failed to create keeper reference for secret: {record_name}")
    logger.info('Secret "%s" saved to "%s" folder', record_name, folder.name)
    return reference


def save_value(
    cli_service: CliService,
    storage: StorageManager,
    record_name: str,
    field_name: str,
    value: str,
) -> str:
    """Store ``value`` as a custom field of a new login record."""
    _require_ready(cli_service)
    if not value:
        raise ValueError("No secret value found to save")
    return _add_record(
        cli_service, storage, record_name, field_name, value, custom_field_type(field_name)
    )


def generate_password(
    cli_service: CliService,
    storage: StorageManager,
    record_name: str,
    field_name: str,
) -> str:
    """Generate a password with Commander and save it as a secret field."""
    _require_ready(cli_service)
    password = cli_service.execute_commander_command("generate", ["-q", "-nb"]).strip()
    if not password:
        raise CommanderError("Keeper Commander returned an empty password")
    return _add_record(cli_service, storage, record_name, field_name, password, "secret")


def resolve_env_file(cli_service: CliService, env_path: str | Path) -> dict[str, str]:
    """Read a dotenv file and replace keeper references with vault values."""
    _require_ready(cli_service)
    env = {k: v or "" for k, v in dotenv_values(env_path).items()}

    by_record: dict[str, list[tuple[str, FieldType, str]]] = {}
    resolved: dict[str, str] = {}
    for key, value in env.items():
        reference = parse_keeper_reference(value)
        if reference is None:
            resolved[key] = value
            continue
        by_record.setdefault(reference.record_uid, []).append(
            (key, reference.field_type, reference.item_name)
        )

    for record_uid, wanted in by_record.items():
        logger.info("Fetching record: %s with %d references", record_uid, len(wanted))
        try:
            record = get_record(cli_service, record_uid)
        except CommanderError as e:
            logger.error("Failed to fetch record %s: %s", record_uid, e)
            for key, _, _ in wanted:
                resolved[key] = f"keeper://{record_uid}/error/failed_to_fetch"
            continue

        for key, field_type, item_name in wanted:
            value = extract_field_value(record, field_type, item_name)
            if value is None:
                logger.error(
                    "Failed to resolve keeper reference: keeper://%s/%s/%s",
                    record_uid, field_type.value, item_name,
                )
                resolved[key] = f"keeper://{record_uid}/{field_type.value}/{item_name}"
            else:
                resolved[key] = value
                logger.info("Resolved %s", key)

    logger.info("Resolved %d environment variables", len(resolved))
    return resolved


def run_securely(
    cli_service: CliService,
    command: list[str],
    env_file: str | Path = ".env",
    cwd: Optional[str | Path] = None,
) -> int:
    """Run ``command`` with dotenv keeper references resolved into its env."""
    env_path = Path(env_file)
    if not env_path.exists():
        raise FileNotFoundError(f"{env_path} not found")
    if not command:
        raise ValueError("No command entered")

    env = {**os.environ, **resolve_env_file(cli_service, env_path)}
    logger.info("Running with Keeper secrets injected: %s", command[0])
    completed = subprocess.run(command, env=env, cwd=str(cwd) if cwd else None)
    return completed.returncode
