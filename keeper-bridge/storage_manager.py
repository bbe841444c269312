"""Persistent selection of the vault folder new secrets are saved into."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from bridge_config import Result
from keeper_notation import ROOT_FOLDER_NAME, ROOT_FOLDER_UID, resolve_folder_paths

if TYPE_CHECKING:
    from cli_service import CliService

logger = logging.getLogger(__name__)

LIST_FOLDERS_ARGS = ["--format=json", "-f", "-R"]

CURRENT_STORAGE_VERSION = 1


class StorageSelection(BaseModel):
    """A vault folder usable as storage location."""

    folder_uid: str
    name: str
    parent_uid: str = ROOT_FOLDER_UID
    folder_path: str = ROOT_FOLDER_NAME

    @property
    def is_root(self) -> bool:
        return self.folder_uid == ROOT_FOLDER_UID


ROOT_STORAGE = StorageSelection(
    folder_uid=ROOT_FOLDER_UID,
    name=ROOT_FOLDER_NAME,
    parent_uid=ROOT_FOLDER_UID,
    folder_path=ROOT_FOLDER_NAME,
)


class StorageState(BaseModel):
    """Root model persisted to the storage state file."""

    version: int = Field(default=CURRENT_STORAGE_VERSION)
    current_storage: Optional[StorageSelection] = None
    updated_at: Optional[str] = None


class StorageManager:
    """Loads, validates and updates the current storage folder."""

    def __init__(self, state_path: str | Path, cli_service: CliService) -> None:
        self.state_path = Path(state_path)
        self.cli_service = cli_service
        self.state = StorageState()

    def load(self) -> Result[StorageState]:
        """Load state from disk. Returns defaults if file doesn't exist."""
        if not self.state_path.exists():
            logger.debug("No storage state at %s", self.state_path)
            return Result.ok(self.state)

        try:
            raw = json.loads(self.state_path.read_text(encoding="utf-8"))
            self.state = StorageState.model_validate(raw)
            return Result.ok(self.state)
        except json.JSONDecodeError as e:
            return Result.fail(f"Corrupt storage file: {e}", "JSON_ERROR")
        except Exception as e:
            return Result.fail(f"Storage load failed: {e}", "LOAD_ERROR")

    def save(self) -> Result[None]:
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(
                self.state.model_dump_json(indent=2), encoding="utf-8"
            )
            return Result.ok(None)
        except Exception as e:
            return Result.fail(f"Storage save failed: {e}", "SAVE_ERROR")

    def get_current_storage(self) -> Optional[StorageSelection]:
        return self.state.current_storage

    def set_current_storage(self, storage: Optional[StorageSelection]) -> Result[None]:
        self.state.current_storage = storage
        self.state.updated_at = datetime.now(timezone.utc).isoformat()
        return self.save()

    def fetch_vault_folders(self) -> list[dict]:
        output = self.cli_service.execute_commander_command("ls", LIST_FOLDERS_ARGS)
        if not output.strip():
            return []
        return json.loads(output)

    def list_folders(self) -> list[StorageSelection]:
        """The vault root followed by every folder with its resolved path."""
        folders = [
            StorageSelection(
                folder_uid=f.folder_uid,
                name=f.name,
                parent_uid=f.parent_uid,
                folder_path=f.folder_path,
            )
            for f in resolve_folder_paths(self.fetch_vault_folders())
        ]
        return [ROOT_STORAGE, *folders]

    def _folder_exists(self, current: StorageSelection) -> bool:
        """Look the folder up in the vault; clears the selection when it is gone.

        Lookup failures propagate so a flaky ``ls`` is not mistaken for a
        deleted folder.
        """
        folders = self.fetch_vault_folders()
        if not any(f.get("folder_uid") == current.folder_uid for f in folders):
            logger.error('Folder "%s" no longer exists on Keeper vault', current.name)
            self.set_current_storage(None)
            return False
        return True

    def validate_current_storage(self) -> bool:
        """False when unset or when the folder no longer exists in the vault."""
        current = self.get_current_storage()
        if current is None:
            return False
        if current.is_root:
            return True

        try:
            return self._folder_exists(current)
        except Exception as e:
            logger.error("Failed to validate current storage: %s", e)
            return False

    def ensure_valid_storage(self) -> StorageSelection:
        """Current storage, falling back to the vault root only when it is gone."""
        current = self.get_current_storage()
        if current is None:
            return ROOT_STORAGE
        if current.is_root or self._folder_exists(current):
            return current
        logger.warning(
            "Previously selected folder is no longer available; saving to %s",
            ROOT_FOLDER_NAME,
        )
        return ROOT_STORAGE

    def choose_folder(self, key: str) -> StorageSelection:
        """Select a folder by uid, name or path and persist it."""
        wanted = key.strip().lower()
        for folder in self.list_folders():
            candidates = {folder.folder_uid.lower(), folder.name.lower(), folder.folder_path.lower()}
            if wanted in candidates:
                result = self.set_current_storage(folder)
                if not result.success:
                    logger.warning("Could not persist storage selection: %s", result.error)
                logger.info('Storage location set to "%s" folder', folder.name)
                return folder
        raise LookupError(f"No vault folder matches '{key}'")
