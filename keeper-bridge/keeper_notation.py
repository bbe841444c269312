"""Keeper notation references and vault JSON helpers.

A reference has the shape ``keeper://<record_uid>/<field_type>/<name>`` where
``field_type`` is ``field`` for standard record fields and ``custom_field``
for custom ones.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

ROOT_FOLDER_UID = "/"
ROOT_FOLDER_NAME = "My Vault"

KEEPER_REFERENCE_PATTERN = re.compile(
    r"^keeper://(?P<record_uid>[A-Za-z0-9_-]+)/(?P<field_type>field|custom_field)/(?P<item_name>[^/]+)$"
)


class FieldType(str, Enum):
    FIELD = "field"
    CUSTOM_FIELD = "custom_field"


@dataclass(frozen=True)
class KeeperReference:
    record_uid: str
    field_type: FieldType
    item_name: str

    def __str__(self) -> str:
        return f"keeper://{self.record_uid}/{self.field_type.value}/{self.item_name}"


@dataclass
class VaultFolder:
    folder_uid: str
    name: str
    parent_uid: str
    folder_path: str = ""


def validate_keeper_reference(reference: str) -> bool:
    return bool(reference) and KEEPER_REFERENCE_PATTERN.match(reference.strip()) is not None


def create_keeper_reference(
    record_uid: str, field_type: FieldType, item_name: str
) -> Optional[str]:
    """Build a reference string; ``None`` when uid or name is missing."""
    if not record_uid or not record_uid.strip():
        logger.error("record_uid is required to create a keeper reference")
        return None
    if not item_name:
        logger.error("item_name is required to create a keeper reference")
        return None
    return str(KeeperReference(record_uid.strip(), FieldType(field_type), item_name))


def parse_keeper_reference(reference: str) -> Optional[KeeperReference]:
    match = KEEPER_REFERENCE_PATTERN.match(reference.strip()) if reference else None
    if match is None:
        logger.debug("Invalid keeper notation reference: %s", reference)
        return None
    return KeeperReference(
        record_uid=match.group("record_uid"),
        field_type=FieldType(match.group("field_type")),
        item_name=match.group("item_name"),
    )


def field_label(entry: dict) -> str:
    """Fields are addressed by label, or by type when unlabeled."""
    return entry.get("label") or entry.get("type") or ""


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def extract_field_value(
    record: dict, field_type: FieldType, item_name: str
) -> Optional[str]:
    """First value of the named field in ``get --format=json`` output."""
    section = "custom" if FieldType(field_type) is FieldType.CUSTOM_FIELD else "fields"
    for entry in record.get(section) or []:
        if field_label(entry) != item_name:
            continue
        values = entry.get("value") or []
        if not values:
            return None
        return _stringify(values[0])
    return None


def resolve_folder_paths(folders: Iterable[dict]) -> list[VaultFolder]:
    """Attach a ``My Vault / a / b`` path to each folder from ``ls -f -R`` JSON."""
    folders = list(folders)
    by_uid = {f["folder_uid"]: f for f in folders}

    resolved: list[VaultFolder] = []
    for folder in folders:
        parts = [folder["name"]]
        parent_uid = folder.get("parent_uid", ROOT_FOLDER_UID)
        seen = {folder["folder_uid"]}
        while parent_uid and parent_uid != ROOT_FOLDER_UID and parent_uid not in seen:
            parent = by_uid.get(parent_uid)
            if parent is None:
                break
            seen.add(parent_uid)
            parts.insert(0, parent["name"])
            parent_uid = parent.get("parent_uid", ROOT_FOLDER_UID)
        parts.insert(0, ROOT_FOLDER_NAME)

        resolved.append(
            VaultFolder(
                folder_uid=folder["folder_uid"],
                name=folder["name"],
                parent_uid=folder.get("parent_uid", ROOT_FOLDER_UID),
                folder_path=" / ".join(parts),
            )
        )
    logger.debug("Resolved paths for %d folders", len(resolved))
    return resolved
