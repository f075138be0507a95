"""Backup catalog — the single JSON document holding every config and backup."""

from __future__ import annotations

import json
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator
from uuid import uuid4

from loguru import logger

from savesync.errors import ConfigNotFoundError
from savesync.models.backup_record import (
    LATEST_NAME,
    BackupRecord,
    backup_record_from_dict,
    backup_record_to_dict,
)
from savesync.models.save_config import (
    SaveConfig,
    save_config_from_dict,
    save_config_to_dict,
)

CATALOG_FILE = "catalog.json"
CURRENT_VERSION = 2
_KEEP_DOCUMENT_BACKUPS = 10


def migrate_document(data: dict[str, Any]) -> dict[str, Any]:
    """
    Bring a catalog document up to the current schema.

    v1 keyed configs and backups by a single device-local id stored in
    ``local_id``; v2 keys both by ``config_id`` and keeps ``local_ids``.
    """
    version = int(data.get("version") or 1)
    if version >= CURRENT_VERSION:
        return data

    logger.info(f"Migrating catalog from v{version} to v{CURRENT_VERSION}")
    old_configs: dict[str, dict[str, Any]] = data.get("configs") or {}
    old_backups: dict[str, list[dict[str, Any]]] = data.get("backups") or {}
    configs: dict[str, dict[str, Any]] = {}
    backups: dict[str, list[dict[str, Any]]] = {}

    for legacy_key, raw in old_configs.items():
        raw = dict(raw)
        config_id = raw.get("config_id") or uuid4().hex
        raw["config_id"] = config_id

        local_ids = list(raw.get("local_ids") or [])
        legacy_id = raw.pop("local_id", None) or legacy_key
        if legacy_id and legacy_id not in local_ids:
            local_ids.insert(0, legacy_id)
        raw["local_ids"] = local_ids
        configs[config_id] = raw

        records = []
        for record in old_backups.get(legacy_key, []):
            record = dict(record)
            record.setdefault("config_id", config_id)
            record["config_id"] = record["config_id"] or config_id
            record.pop("local_id", None)
            records.append(record)
        if records:
            backups[config_id] = records

    return {"version": CURRENT_VERSION, "configs": configs, "backups": backups}


class Catalog:
    """
    In-memory view of ``catalog.json`` with single-writer persistence.

    Every mutation is a read-modify-write of the whole document under one
    re-entrant lock; the file is rewritten wholesale when the outermost
    ``transaction()`` exits.
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._path = data_dir / CATALOG_FILE
        self._lock = threading.RLock()
        self._depth = 0
        self._configs: dict[str, SaveConfig] = {}
        self._backups: dict[str, list[BackupRecord]] = {}
        self._local_index: dict[str, str] = {}

    @property
    def path(self) -> Path:
        return self._path

    # ── Persistence ──

    def load(self) -> None:
        """Load the catalog from disk, migrating older schemas."""
        with self._lock:
            self._configs.clear()
            self._backups.clear()
            if self._path.exists():
                try:
                    with open(self._path, encoding="utf-8") as f:
                        raw = json.load(f)
                    needs_save = int(raw.get("version") or 1) < CURRENT_VERSION
                    self._apply_document(migrate_document(raw))
                    if needs_save:
                        self.save()
                except (json.JSONDecodeError, OSError, TypeError, ValueError) as e:
                    logger.error(f"Failed to load catalog: {e}")
            self._rebuild_index()

    def _apply_document(self, data: dict[str, Any]) -> None:
        for key, raw in (data.get("configs") or {}).items():
            try:
                config = save_config_from_dict(raw)
            except (TypeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed config '{key}': {e}")
                continue
            self._configs[config.config_id] = config

        for config_id, records in (data.get("backups") or {}).items():
            parsed: list[BackupRecord] = []
            for raw in records:
                try:
                    record = backup_record_from_dict(raw)
                except (TypeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed backup in '{config_id}': {e}")
                    continue
                record.config_id = record.config_id or config_id
                parsed.append(record)
            if parsed:
                self._backups[config_id] = parsed

    def _document(self) -> dict[str, Any]:
        return {
            "version": CURRENT_VERSION,
            "configs": {cid: save_config_to_dict(c) for cid, c in self._configs.items()},
            "backups": {
                cid: [backup_record_to_dict(r) for r in records]
                for cid, records in self._backups.items()
                if records
            },
        }

    def snapshot_bytes(self) -> bytes:
        """Serialize the current document, consistent with concurrent writers."""
        with self._lock:
            return json.dumps(self._document(), ensure_ascii=False, indent=2).encode("utf-8")

    def save(self) -> None:
        """Persist the whole document (tmp file + atomic replace)."""
        with self._lock:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(".tmp")
            try:
                tmp.write_bytes(self.snapshot_bytes())
                tmp.replace(self._path)
            except OSError as e:
                logger.error(f"Failed to save catalog: {e}")
                tmp.unlink(missing_ok=True)
                raise

    @contextmanager
    def transaction(self) -> Iterator[Catalog]:
        """Hold the writer lock; persist once when the outermost block exits cleanly."""
        with self._lock:
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                raise
            self._depth -= 1
            if self._depth == 0:
                self.save()

    def replace_document(self, source: Path) -> list[str]:
        """
        Replace the whole catalog with ``source`` (e.g. a copy pulled from the cloud).

        The current file is kept as ``catalog.json.backup_<timestamp>``.
        Returns the config ids that were not present before.
        """
        with open(source, encoding="utf-8") as f:
            incoming = migrate_document(json.load(f))

        with self._lock:
            before = set(self._configs)
            if self._path.exists():
                stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                shutil.copy2(self._path, self._path.with_name(f"{CATALOG_FILE}.backup_{stamp}"))
                self._prune_document_backups()

            self._configs.clear()
            self._backups.clear()
            self._apply_document(incoming)
            self._rebuild_index()
            self.save()
            added = [cid for cid in self._configs if cid not in before]

        logger.info(f"Catalog replaced from {source.name} ({len(added)} new config(s))")
        return added

    def _prune_document_backups(self) -> None:
        old = sorted(self._data_dir.glob(f"{CATALOG_FILE}.backup_*"), reverse=True)
        for stale in old[_KEEP_DOCUMENT_BACKUPS:]:
            try:
                stale.unlink()
            except OSError as e:
                logger.warning(f"Failed to delete old catalog backup {stale.name}: {e}")

    def _rebuild_index(self) -> None:
        self._local_index = {
            local_id: config.config_id
            for config in self._configs.values()
            for local_id in config.local_ids
        }

    # ── Configs ──

    def get_config(self, config_id: str) -> SaveConfig | None:
        with self._lock:
            return self._configs.get(config_id)

    def require_config(self, config_id: str) -> SaveConfig:
        config = self.get_config(config_id)
        if config is None:
            raise ConfigNotFoundError(f"No save config with id {config_id}")
        return config

    def find_config_by_local_id(self, local_id: str) -> SaveConfig | None:
        with self._lock:
            config_id = self._local_index.get(local_id)
            return self._configs.get(config_id) if config_id else None

    def all_configs(self) -> list[SaveConfig]:
        with self._lock:
            return list(self._configs.values())

    def save_config(self, config: SaveConfig) -> None:
        with self.transaction():
            config.updated_at = datetime.now(tz=config.updated_at.tzinfo)
            self._configs[config.config_id] = config
            self._rebuild_index()

    def delete_config(self, config_id: str) -> list[BackupRecord]:
        """Drop a config and its backup entries; returns the removed records."""
        with self.transaction():
            self._configs.pop(config_id, None)
            removed = self._backups.pop(config_id, [])
            self._rebuild_index()
        return removed

    def get_or_create_config(self, local_id: str, display_name: str) -> SaveConfig:
        with self.transaction():
            config = self.find_config_by_local_id(local_id)
            if config is None:
                config = SaveConfig(display_name=display_name, local_ids=[local_id])
                self._configs[config.config_id] = config
                self._rebuild_index()
                logger.info(f"Created save config {config.config_id} for '{display_name}'")
            return config

    # ── Matching ──

    def link_local_id(self, config_id: str, local_id: str) -> SaveConfig:
        """Attach ``local_id`` to a config, detaching it from any other config."""
        with self.transaction():
            target = self.require_config(config_id)
            for other in self._configs.values():
                if other is not target:
                    other.remove_local_id(local_id)
            target.unexclude_local_id(local_id)
            target.add_local_id(local_id)
            self._rebuild_index()
            return target

    def exclude_local_id(self, config_id: str, local_id: str) -> None:
        """Never auto-match ``local_id`` to this config again."""
        with self.transaction():
            config = self.require_config(config_id)
            config.remove_local_id(local_id)
            config.exclude_local_id(local_id)
            self._rebuild_index()

    def clear_match(self, config_id: str, local_id: str) -> None:
        """User-initiated unlink: the local id is excluded and auto-matching stays off."""
        with self.transaction():
            config = self.require_config(config_id)
            config.remove_local_id(local_id)
            config.exclude_local_id(local_id)
            config.disable_auto_match = True
            self._rebuild_index()

    def enable_auto_match(self, config_id: str) -> None:
        with self.transaction():
            self.require_config(config_id).disable_auto_match = False

    def find_auto_match(self, display_name: str, local_id: str) -> SaveConfig | None:
        """Exact (case-insensitive) name match among configs that allow auto-matching."""
        wanted = display_name.strip().casefold()
        if not wanted:
            return None
        with self._lock:
            if local_id in self._local_index:
                return None
            for config in self._configs.values():
                if config.disable_auto_match or config.is_local_id_excluded(local_id):
                    continue
                if config.display_name.strip().casefold() == wanted:
                    return config
        return None

    # ── Backups ──

    def backups_for(self, config_id: str) -> list[BackupRecord]:
        """All backups of a config, newest first."""
        with self._lock:
            records = list(self._backups.get(config_id, []))
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def get_backup(self, backup_id: str) -> BackupRecord | None:
        with self._lock:
            for records in self._backups.values():
                for record in records:
                    if record.id == backup_id:
                        return record
        return None

    def latest_for(self, config_id: str) -> BackupRecord | None:
        with self._lock:
            for record in self._backups.get(config_id, []):
                if record.name == LATEST_NAME:
                    return record
        return None

    def add_backup(self, record: BackupRecord) -> None:
        with self.transaction():
            self._backups.setdefault(record.config_id, []).append(record)

    def update_backup(self, record: BackupRecord) -> None:
        with self.transaction():
            records = self._backups.setdefault(record.config_id, [])
            for i, existing in enumerate(records):
                if existing.id == record.id:
                    records[i] = record
                    break
            else:
                records.append(record)

    def replace_latest(self, record: BackupRecord) -> BackupRecord | None:
        """Install ``record`` as the config's Latest; returns the one it replaced."""
        with self.transaction():
            records = self._backups.setdefault(record.config_id, [])
            previous = next((r for r in records if r.name == LATEST_NAME), None)
            if previous is not None:
                records.remove(previous)
            records.append(record)
            return previous

    def remove_backup(self, record: BackupRecord) -> bool:
        """Remove a backup entry; returns True if the config has no backups left."""
        with self.transaction():
            records = self._backups.get(record.config_id, [])
            records[:] = [r for r in records if r.id != record.id]
            if not records:
                self._backups.pop(record.config_id, None)
                return True
            return False
