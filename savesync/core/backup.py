"""Backup store — captures, realtime snapshots and restores of save configs."""

from __future__ import annotations

import shutil
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from savesync.core.archive import (
    RestoreResult,
    compute_crc,
    create_archive,
    read_archive_info,
    resolve_save_paths,
    restore_archive,
    validate_archive,
    write_archive_info,
)
from savesync.errors import InvalidArchiveError, SaveSyncError
from savesync.models.backup_record import LATEST_NAME, ArchiveInfo, BackupRecord
from savesync.utils import sanitize_filename, unique_path

if TYPE_CHECKING:
    from savesync.config import Config
    from savesync.core.path_resolver import PathContext
    from savesync.data.catalog import Catalog
    from savesync.models.save_config import SaveConfig, SavePath

BACKUPS_DIR = "Backups"
LATEST_FILE = f"{LATEST_NAME}.zip"
REALTIME_NOTE = "Realtime sync snapshot"


def _without(history: list[str], crc: str) -> list[str]:
    return [c for c in history if c != crc]


class BackupManager:
    """
    Versioned ZIP backups tracked in the catalog.

    Backups of a config live in ``<data_dir>/Backups/<name>_<id8>/``:
    timestamped ``Backup_*.zip`` captures plus the single ``Latest.zip`` head
    used for cloud sync.
    """

    def __init__(self, config: Config, catalog: Catalog) -> None:
        self._config = config
        self._catalog = catalog

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def backup_root(self) -> Path:
        return self._config.data_dir / BACKUPS_DIR

    def backup_dir(self, config: SaveConfig) -> Path:
        name = sanitize_filename(config.display_name) or "Config"
        return self.backup_root / f"{name}_{config.config_id[:8]}"

    def latest_path(self, config: SaveConfig) -> Path:
        return self.backup_dir(config) / LATEST_FILE

    def full_path(self, record: BackupRecord) -> Path:
        return self._config.data_dir / record.backup_file_path

    def _relative(self, path: Path) -> str:
        return path.relative_to(self._config.data_dir).as_posix()

    # ── Capture ──

    def create_backup(
        self,
        config_id: str,
        ctx: PathContext | None = None,
        note: str = "",
        is_auto: bool = False,
    ) -> BackupRecord:
        """Capture every save path of a config into a new timestamped archive."""
        config = self._catalog.require_config(config_id)
        if not config.save_paths:
            raise SaveSyncError(f"No save paths configured for {config.display_name or config_id}")
        resolve_save_paths(config.save_paths, ctx)

        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        zip_path = unique_path(self.backup_dir(config) / f"Backup_{stamp}.zip")
        summary = create_archive(config.save_paths, ctx, zip_path)

        head = self._current_head(config)
        history = _without([*head[1], head[0]], summary.crc) if head else []
        record = BackupRecord(
            config_id=config.config_id,
            name=zip_path.stem,
            backup_file_path=self._relative(zip_path),
            description=note,
            is_auto_backup=is_auto,
            crc=summary.crc,
            version_history=history,
        )
        self._finalize(zip_path, record, config)
        self._catalog.add_backup(record)
        logger.info(
            f"Created {'auto ' if is_auto else ''}backup {record.name} for "
            f"'{config.display_name}' (CRC {record.crc})"
        )

        if self._config.realtime_sync_enabled:
            self.create_realtime_snapshot(config_id, ctx)
        return record

    def create_realtime_snapshot(
        self,
        config_id: str,
        ctx: PathContext | None = None,
        base_version_history: list[str] | None = None,
    ) -> BackupRecord:
        """
        Replace the config's ``Latest`` archive with the current save data.

        The new head's history is ``base_version_history`` (default: the
        previous head's history) followed by the previous head's CRC.
        """
        config = self._catalog.require_config(config_id)
        if not config.save_paths:
            raise SaveSyncError(f"No save paths configured for {config.display_name or config_id}")
        resolve_save_paths(config.save_paths, ctx)

        latest_path = self.latest_path(config)
        staging = latest_path.with_name(f"{LATEST_NAME}.new.zip")
        summary = create_archive(config.save_paths, ctx, staging)

        head = self._current_head(config)
        if base_version_history is not None:
            history = list(base_version_history)
        else:
            history = list(head[1]) if head else []
        if head and head[0]:
            history.append(head[0])

        record = BackupRecord(
            config_id=config.config_id,
            name=LATEST_NAME,
            backup_file_path=self._relative(latest_path),
            description=REALTIME_NOTE,
            crc=summary.crc,
            version_history=_without(history, summary.crc),
        )
        try:
            write_archive_info(staging, record.to_info(config.display_name))
            staging.replace(latest_path)
        except BaseException:
            staging.unlink(missing_ok=True)
            raise
        record.file_size = latest_path.stat().st_size
        self._catalog.replace_latest(record)

        logger.info(
            f"Realtime snapshot for '{config.display_name}': CRC {record.crc}, "
            f"{len(record.version_history)} ancestor(s)"
        )
        return record

    def _finalize(self, zip_path: Path, record: BackupRecord, config: SaveConfig) -> None:
        try:
            write_archive_info(zip_path, record.to_info(config.display_name))
        except BaseException:
            zip_path.unlink(missing_ok=True)
            raise
        record.file_size = zip_path.stat().st_size

    def _current_head(self, config: SaveConfig) -> tuple[str, list[str]] | None:
        """(crc, history) of the local Latest, preferring the archive's own metadata."""
        info = self.read_latest_info(config)
        if info is not None:
            return info.crc, list(info.version_history)
        record = self._catalog.latest_for(config.config_id)
        if record is not None and record.crc:
            return record.crc, list(record.version_history)
        return None

    def read_latest_info(self, config: SaveConfig) -> ArchiveInfo | None:
        """
        Version state embedded in the local ``Latest.zip``.

        The CRC is recomputed from the archive when the metadata lacks one;
        history is empty when the metadata is missing entirely.  An unreadable
        archive counts as no local head, so the next pull or snapshot replaces it.
        """
        path = self.latest_path(config)
        if not path.is_file():
            return None
        info = read_archive_info(path)
        if info is None:
            logger.warning(f"No metadata in {path}; recomputing CRC")
            info = ArchiveInfo(display_name=config.display_name)
        if not info.crc:
            try:
                info.crc = compute_crc(path)
            except InvalidArchiveError as e:
                logger.error(f"Ignoring unreadable Latest for '{config.display_name}': {e}")
                return None
        return info

    # ── Restore / adopt ──

    def restore_backup(
        self,
        record: BackupRecord,
        ctx: PathContext | None = None,
        exclude_paths: list[SavePath] | None = None,
    ) -> RestoreResult:
        """Restore a backup; history is left untouched."""
        zip_path = self.full_path(record)
        if not zip_path.is_file():
            raise InvalidArchiveError(f"Backup file not found: {zip_path}")
        logger.info(f"Restoring {record.name} ({record.crc}) from {zip_path.name}")
        return restore_archive(zip_path, ctx, exclude_paths)

    def restore_backup_file(
        self,
        zip_path: Path,
        ctx: PathContext | None = None,
        exclude_paths: list[SavePath] | None = None,
    ) -> RestoreResult:
        """Restore an archive that is not (yet) in the catalog, e.g. a fresh download."""
        validate_archive(zip_path)
        return restore_archive(zip_path, ctx, exclude_paths)

    def adopt_latest(self, config_id: str, archive: Path) -> BackupRecord:
        """Install a downloaded archive as the local ``Latest`` with its embedded version state."""
        config = self._catalog.require_config(config_id)
        validate_archive(archive)
        info = read_archive_info(archive)
        crc = info.crc if info and info.crc else compute_crc(archive)

        latest_path = self.latest_path(config)
        latest_path.parent.mkdir(parents=True, exist_ok=True)
        if archive != latest_path:
            shutil.move(str(archive), latest_path)

        record = BackupRecord(
            config_id=config.config_id,
            name=LATEST_NAME,
            backup_file_path=self._relative(latest_path),
            description=info.description if info else REALTIME_NOTE,
            crc=crc,
            version_history=_without(info.version_history, crc) if info else [],
            file_size=latest_path.stat().st_size,
        )
        if info is not None:
            record.created_at = info.created_at
        self._catalog.replace_latest(record)
        logger.info(f"Adopted Latest {crc} for '{config.display_name}'")
        return record

    # ── Maintenance ──

    def delete_backup(self, record: BackupRecord) -> None:
        """Delete the archive and its catalog entry; prune the dir when it was the last one."""
        zip_path = self.full_path(record)
        zip_path.unlink(missing_ok=True)
        last = self._catalog.remove_backup(record)
        logger.info(f"Deleted backup {record.name} ({zip_path.name})")

        if last and zip_path.parent.is_dir():
            try:
                zip_path.parent.rmdir()
                logger.debug(f"Removed empty backup directory {zip_path.parent}")
            except OSError as e:
                logger.warning(f"Backup directory not removed: {e}")

    def cleanup_old_auto_backups(self, config_id: str, max_count: int) -> list[BackupRecord]:
        """Delete the oldest auto backups beyond ``max_count`` (0 = unlimited)."""
        if max_count <= 0:
            return []
        autos = [r for r in self.list_backups(config_id) if r.is_auto_backup and not r.is_latest]
        stale = autos[max_count:]
        for record in stale:
            self.delete_backup(record)
        if stale:
            logger.info(f"Cleaned up {len(stale)} old auto backup(s) for {config_id}")
        return stale

    def import_backup(self, config_id: str, source: Path, description: str = "") -> BackupRecord:
        """Copy an external archive into the store as a manual backup."""
        config = self._catalog.require_config(config_id)
        validate_archive(source)

        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        zip_path = unique_path(self.backup_dir(config) / f"Imported_{stamp}.zip")
        zip_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, zip_path)

        info = read_archive_info(zip_path)
        crc = compute_crc(zip_path)
        record = BackupRecord(
            config_id=config.config_id,
            name=zip_path.stem,
            backup_file_path=self._relative(zip_path),
            description=description or (info.description if info else "") or f"Imported from {source.name}",
            crc=crc,
            version_history=_without(info.version_history, crc) if info else [],
        )
        self._finalize(zip_path, record, config)
        self._catalog.add_backup(record)
        logger.info(f"Imported {source.name} as {record.name}")
        return record

    def update_description(self, record: BackupRecord, description: str) -> BackupRecord:
        """Edit a backup's note; an edited auto backup becomes a manual one."""
        record.description = description
        record.is_auto_backup = False
        zip_path = self.full_path(record)
        if zip_path.is_file():
            config = self._catalog.get_config(record.config_id)
            write_archive_info(zip_path, record.to_info(config.display_name if config else ""))
            record.file_size = zip_path.stat().st_size
        self._catalog.update_backup(record)
        return record

    # ── Queries ──

    def latest_backup(self, config_id: str) -> BackupRecord | None:
        return self._catalog.latest_for(config_id)

    def list_backups(self, config_id: str) -> list[BackupRecord]:
        """All backups of a config, newest first."""
        return self._catalog.backups_for(config_id)
