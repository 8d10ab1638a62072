"""
The mappings file on disk.

Every write goes through a per-path asyncio.Lock and is preceded by a
timestamped backup in ``.config-backups`` next to the file.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import MappingError
from .models import Mapping

log = logging.getLogger("red.forum_sync.persistence")

BACKUP_DIRNAME = ".config-backups"
MAX_BACKUPS = 10

_locks: Dict[Path, asyncio.Lock] = {}


def _lock_for(path: Path) -> asyncio.Lock:
    lock = _locks.get(path)
    if lock is None:
        lock = _locks[path] = asyncio.Lock()
    return lock


class ConfigPersistence:
    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path).resolve()
        self.backup_dir = self.path.parent / BACKUP_DIRNAME
        self._lock = _lock_for(self.path)

    # ----------------------
    # Load / save
    # ----------------------
    async def load(self) -> Dict[str, Any]:
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def save(self, data: Dict[str, Any]) -> None:
        async with self._lock:
            await self._save_unlocked(data)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"mappings": []}
        return json.loads(self.path.read_text(encoding="utf-8"))

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    async def _save_unlocked(self, data: Dict[str, Any]) -> None:
        await self.create_backup()
        await asyncio.to_thread(self._write, data)
        log.debug("Saved %d mapping(s) to %s", len(data.get("mappings", [])), self.path)

    # ----------------------
    # Mapping CRUD
    # ----------------------
    async def add_mapping(self, mapping: Mapping) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            mappings = data.setdefault("mappings", [])
            if any(m.get("id") == mapping.id for m in mappings):
                raise MappingError(f"Mapping already exists: {mapping.id}")
            mappings.append(mapping.to_dict())
            await self._save_unlocked(data)
        log.info("Persisted mapping %s (%s)", mapping.id, mapping.repo_key)

    async def remove_mapping(self, mapping_id: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            mappings = data.get("mappings", [])
            remaining = [m for m in mappings if m.get("id") != mapping_id]
            if len(remaining) == len(mappings):
                raise MappingError(f"Mapping not found: {mapping_id}")
            data["mappings"] = remaining
            await self._save_unlocked(data)
        log.info("Removed mapping %s from %s", mapping_id, self.path.name)

    async def update_mapping(self, mapping_id: str, updates: Dict[str, Any]) -> Mapping:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            for index, raw in enumerate(data.get("mappings", [])):
                if raw.get("id") == mapping_id:
                    merged = {**raw, **updates, "id": mapping_id}
                    data["mappings"][index] = merged
                    await self._save_unlocked(data)
                    return Mapping.from_dict(merged)
        raise MappingError(f"Mapping not found: {mapping_id}")

    # ----------------------
    # Backups
    # ----------------------
    async def create_backup(self) -> Optional[Path]:
        """Copy the current file into the backup directory. Returns None when there is nothing to back up."""
        if not self.path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup = self.backup_dir / f"config-{stamp}.json"
        try:
            await asyncio.to_thread(self._copy_to, backup)
        except OSError:
            # A failed backup must not block the write itself
            log.exception("Failed to create backup of %s", self.path)
            return None
        await asyncio.to_thread(self._clean_old_backups)
        log.debug("Created backup: %s", backup)
        return backup

    def _copy_to(self, backup: Path) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        backup.write_bytes(self.path.read_bytes())

    def list_backups(self) -> List[Path]:
        """Backups, newest first."""
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob("config-*.json"), reverse=True)

    def _clean_old_backups(self) -> None:
        for old in self.list_backups()[MAX_BACKUPS:]:
            try:
                old.unlink()
                log.debug("Deleted old backup: %s", old.name)
            except OSError:
                log.exception("Failed to delete old backup %s", old)

    async def rollback(self, backup: Union[str, Path]) -> None:
        backup = Path(backup)
        async with self._lock:
            if not backup.exists():
                raise MappingError(f"Backup not found: {backup}")
            data = json.loads(await asyncio.to_thread(backup.read_text, encoding="utf-8"))
            await self._save_unlocked(data)
        log.info("Rolled back to: %s", backup)
