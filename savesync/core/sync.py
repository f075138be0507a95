"""Sync manager — host lifecycle hooks driving backups and the cloud replica."""

from __future__ import annotations

import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from loguru import logger

from savesync.core.backup import LATEST_FILE
from savesync.core.rclone import CATALOG_KEY, RemoteExists, backup_key
from savesync.core.resolver import SyncCheck, SyncResolver, SyncStatus
from savesync.errors import (
    ConflictUnresolvedError,
    SaveSyncError,
    TransportFailureError,
)

if TYPE_CHECKING:
    from savesync.config import Config
    from savesync.core.backup import BackupManager
    from savesync.core.path_resolver import PathContext
    from savesync.core.rclone import CloudTransport
    from savesync.core.tasks import BackgroundTaskManager
    from savesync.models.backup_record import BackupRecord
    from savesync.models.save_config import SaveConfig


class ConflictChoice:
    USE_CLOUD = "use_cloud"
    KEEP_LOCAL = "keep_local"
    CANCEL = "cancel"


ConflictDecider = Callable[[SyncCheck], str]


@dataclass
class CatalogSyncResult:
    """Outcome of pulling the catalog document from the cloud."""

    success: bool = True
    downloaded: bool = False
    new_config_ids: list[str] = field(default_factory=list)
    pending_pushes: int = 0
    error: str = ""


@dataclass
class LaunchDecision:
    """What the host should do before launching a protected application."""

    proceed: bool = True
    status: SyncStatus | None = None
    pulled: bool = False
    pushed: bool = False
    error: str = ""
    check: SyncCheck | None = None


class SyncManager:
    """
    Orchestrates the backup store, resolver and cloud transport.

    Remote layout (under the configured remote root):
      catalog.json
      Backups/{config_id}/
        ├── Latest.zip
        └── Backup_{timestamp}.zip
    """

    def __init__(
        self,
        config: Config,
        backup_manager: BackupManager,
        transport: CloudTransport,
        tasks: BackgroundTaskManager,
    ) -> None:
        self._config = config
        self._backups = backup_manager
        self._catalog = backup_manager.catalog
        self._transport = transport
        self._tasks = tasks
        self._resolver = SyncResolver(backup_manager)
        self._catalog_upload_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._config.cloud_sync_enabled

    @property
    def resolver(self) -> SyncResolver:
        return self._resolver

    # ── Startup ──

    def on_start(self) -> CatalogSyncResult:
        """Pull the cloud catalog, then re-queue pushes that never reached the cloud."""
        if not self.enabled:
            return CatalogSyncResult()
        result = self.sync_catalog_from_cloud()
        if result.success:
            result.pending_pushes = self.push_pending()
        return result

    def sync_catalog_from_cloud(self) -> CatalogSyncResult:
        result = CatalogSyncResult()
        state = self._transport.exists(CATALOG_KEY)
        if state is RemoteExists.UNKNOWN:
            result.success = False
            result.error = "Cloud storage is unreachable"
            logger.warning("Catalog sync skipped: cloud storage is unreachable")
            return result
        if state is RemoteExists.FALSE:
            logger.info("No catalog in the cloud yet, uploading the local one")
            self._tasks.run("upload_catalog", self._upload_catalog_or_raise)
            return result

        with tempfile.TemporaryDirectory(prefix="savesync_") as tmp:
            target = Path(tmp) / CATALOG_KEY
            if not self._transport.download(CATALOG_KEY, target):
                result.success = False
                result.error = "Failed to download the cloud catalog"
                logger.error(result.error)
                return result
            try:
                result.new_config_ids = self._catalog.replace_document(target)
            except (ValueError, OSError) as e:
                result.success = False
                result.error = f"Cloud catalog rejected: {e}"
                logger.error(result.error)
                return result

        result.downloaded = True
        return result

    def push_pending(self) -> int:
        """Queue a push for every config whose local head is ahead of (or missing from) the cloud."""
        queued = 0
        for config in self._catalog.all_configs():
            try:
                check = self._resolver.check(config)
            except SaveSyncError as e:
                logger.warning(f"Cannot check '{config.display_name}': {e}")
                continue
            if check.status in (SyncStatus.CLOUD_BEHIND, SyncStatus.CLOUD_MISSING):
                self._tasks.run(f"push_{config.config_id[:8]}", self.push_latest, config, None, False)
                queued += 1
        if queued:
            logger.info(f"Queued {queued} pending Latest upload(s)")
        return queued

    # ── Launch ──

    def on_before_launch(
        self,
        local_id: str,
        ctx: PathContext | None = None,
        decide: ConflictDecider | None = None,
        require_sync: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> LaunchDecision:
        """
        Bring the local save up to date before a launch.

        Pulls when the local head is behind or missing; on a conflict asks
        ``decide`` (raising ConflictUnresolvedError without one).  Sync
        failures are reported in the decision and block the launch only when
        ``require_sync`` is set.  Setting ``cancel_event`` while a keep-local
        upload is running lets the launch go ahead with the upload finishing
        in the background.
        """
        decision = LaunchDecision()
        config = self._catalog.find_config_by_local_id(local_id)
        if config is None or not self.enabled:
            return decision

        try:
            check = self._resolver.check(config)
            decision.check = check
            decision.status = check.status

            if check.status.needs_pull:
                self.pull_and_restore_latest(config, ctx)
                decision.pulled = True
            elif check.status is SyncStatus.CONFLICT:
                if decide is None:
                    raise ConflictUnresolvedError(check)
                choice = decide(check)
                if choice == ConflictChoice.CANCEL:
                    logger.info(f"Launch of '{config.display_name}' cancelled at conflict prompt")
                    decision.proceed = False
                    return decision
                self.resolve_conflict(config, ctx, choice, check, cancel_event)
                decision.pulled = choice == ConflictChoice.USE_CLOUD
                decision.pushed = choice == ConflictChoice.KEEP_LOCAL
            elif check.status in (SyncStatus.CLOUD_BEHIND, SyncStatus.CLOUD_MISSING):
                self._tasks.run(f"push_{config.config_id[:8]}", self.push_latest, config, ctx, False)
        except ConflictUnresolvedError:
            raise
        except (SaveSyncError, OSError) as e:
            logger.error(f"Pre-launch sync for '{config.display_name}' failed: {e}")
            decision.error = str(e)
            decision.proceed = not require_sync

        return decision

    def resolve_conflict(
        self,
        config: SaveConfig,
        ctx: PathContext | None,
        choice: str,
        check: SyncCheck | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BackupRecord | None:
        """
        Apply the user's answer to a conflict; CANCEL changes nothing.

        KEEP_LOCAL snapshots in the foreground, then waits for the upload
        until ``cancel_event`` is set; a cancelled wait leaves the upload
        running in the background.
        """
        if choice == ConflictChoice.USE_CLOUD:
            return self.pull_and_restore_latest(config, ctx)
        if choice == ConflictChoice.KEEP_LOCAL:
            check = check or self._resolver.check(config)
            base = list(check.local_history)
            # Record the discarded cloud lineage so devices still on it see themselves as behind
            for crc in [*check.cloud_history, check.cloud_crc]:
                if crc and crc not in base and crc != check.local_crc:
                    base.append(crc)
            record = self._backups.create_realtime_snapshot(config.config_id, ctx, base)
            self._tasks.run_and_wait(
                f"push_{config.config_id[:8]}",
                self.push_latest,
                config,
                ctx,
                False,
                cancel_event=cancel_event,
            )
            return record
        if choice == ConflictChoice.CANCEL:
            return None
        raise ValueError(f"Unknown conflict choice: {choice}")

    # ── Latest head transfers ──

    def pull_and_restore_latest(self, config: SaveConfig, ctx: PathContext | None = None) -> BackupRecord:
        """Download the cloud Latest, restore it over the live save and adopt it as the local head."""
        staging = self._backups.backup_dir(config) / "Latest.download.zip"
        staging.parent.mkdir(parents=True, exist_ok=True)
        try:
            if not self._transport.download(backup_key(config.config_id, LATEST_FILE), staging):
                raise TransportFailureError(f"Failed to download Latest for '{config.display_name}'")
            # The cloud head is mirrored as-is, restore excludes do not apply
            self._backups.restore_backup_file(staging, ctx)
            record = self._backups.adopt_latest(config.config_id, staging)
        finally:
            staging.unlink(missing_ok=True)

        self._mirror_cloud_latest(config, record)
        logger.info(f"Pulled Latest {record.crc} for '{config.display_name}'")
        return record

    def push_latest(
        self,
        config: SaveConfig,
        ctx: PathContext | None = None,
        snapshot: bool = True,
        base_version_history: list[str] | None = None,
    ) -> BackupRecord:
        """Upload the local Latest (optionally taking a fresh snapshot first) and publish it."""
        if snapshot:
            record = self._backups.create_realtime_snapshot(config.config_id, ctx, base_version_history)
        else:
            record = self._current_latest(config)

        if not self._transport.upload(self._backups.full_path(record), backup_key(config.config_id, LATEST_FILE)):
            raise TransportFailureError(f"Failed to upload Latest for '{config.display_name}'")

        self._publish_latest(config, record)
        logger.info(f"Pushed Latest {record.crc} for '{config.display_name}'")
        return record

    def _current_latest(self, config: SaveConfig) -> BackupRecord:
        record = self._backups.latest_backup(config.config_id)
        info = self._backups.read_latest_info(config)
        if info is None:
            raise SaveSyncError(f"No local Latest for '{config.display_name}'")
        if record is None or record.crc != info.crc:
            # Catalog entry came from another device; the archive is authoritative
            record = self._backups.adopt_latest(config.config_id, self._backups.latest_path(config))
        return record

    def _mirror_cloud_latest(self, config: SaveConfig, record: BackupRecord) -> None:
        with self._catalog.transaction():
            # The catalog may have been replaced since the caller looked the config up
            current = self._catalog.get_config(config.config_id) or config
            current.set_cloud_latest(record.crc, record.version_history, record.created_at, record.file_size)
            self._catalog.save_config(current)

    def _publish_latest(self, config: SaveConfig, record: BackupRecord) -> None:
        self._mirror_cloud_latest(config, record)
        self.upload_catalog()

    # ── Individual backups ──

    def create_backup(self, config_id: str, ctx: PathContext | None = None, note: str = "") -> BackupRecord:
        """Manual backup; uploaded in the background when cloud sync is on."""
        record = self._backups.create_backup(config_id, ctx, note)
        if self.enabled:
            self.upload_backup_in_background(record)
            if self._config.realtime_sync_enabled:
                config = self._catalog.require_config(config_id)
                self._tasks.run(f"push_{config_id[:8]}", self.push_latest, config, None, False)
        return record

    def restore_backup(self, record: BackupRecord, ctx: PathContext | None = None) -> None:
        """Restore with the config's excludes; with realtime sync the restored state becomes the new head."""
        config = self._catalog.require_config(record.config_id)
        self._backups.restore_backup(record, ctx, config.restore_exclude_paths)
        if not self._config.realtime_sync_enabled or record.is_latest:
            return
        latest = self._backups.create_realtime_snapshot(config.config_id, ctx, record.version_history)
        if self.enabled:
            self._tasks.run(f"push_{config.config_id[:8]}", self.push_latest, config, None, False)
        logger.info(f"Latest re-created after restore ({latest.crc})")

    def delete_backup(self, record: BackupRecord) -> None:
        """Delete a backup locally and, in the background, from the cloud."""
        if record.is_latest:
            raise SaveSyncError("The Latest snapshot is the sync anchor and cannot be deleted")
        self._backups.delete_backup(record)
        if self.enabled:
            self._tasks.run(f"delete_{record.name}", self.delete_backup_from_cloud, record)

    def upload_backup(self, record: BackupRecord) -> bool:
        key = backup_key(record.config_id, record.file_name)
        if not self._transport.upload(self._backups.full_path(record), key):
            logger.error(f"Failed to upload backup {record.name}")
            return False
        if record.is_latest:
            config = self._catalog.get_config(record.config_id)
            if config is not None:
                self._publish_latest(config, record)
                return True
        self.upload_catalog()
        return True

    def upload_backup_in_background(self, record: BackupRecord) -> str:
        return self._tasks.run(f"upload_{record.name}", self._upload_backup_or_raise, record)

    def _upload_backup_or_raise(self, record: BackupRecord) -> None:
        if not self.upload_backup(record):
            raise TransportFailureError(f"Upload of {record.name} failed")

    def delete_backup_from_cloud(self, record: BackupRecord) -> bool:
        ok = self._transport.delete(backup_key(record.config_id, record.file_name))
        if not ok:
            raise TransportFailureError(f"Cloud delete of {record.name} failed")
        self.upload_catalog()
        return ok

    # ── Catalog / bulk ──

    def upload_catalog(self) -> bool:
        # Snapshot and upload together so a stale document never lands last
        with self._catalog_upload_lock, tempfile.TemporaryDirectory(prefix="savesync_") as tmp:
            path = Path(tmp) / CATALOG_KEY
            path.write_bytes(self._catalog.snapshot_bytes())
            ok = self._transport.upload(path, CATALOG_KEY)
        if not ok:
            logger.error("Failed to upload catalog to cloud")
        return ok

    def _upload_catalog_or_raise(self) -> None:
        if not self.upload_catalog():
            raise TransportFailureError("Catalog upload failed")

    def upload_all_backups(self) -> bool:
        """Upload every config's backup folder, then the catalog."""
        ok = True
        for config in self._catalog.all_configs():
            local_dir = self._backups.backup_dir(config)
            if not local_dir.is_dir():
                continue
            if not self._transport.upload_dir(local_dir, backup_key(config.config_id)):
                logger.error(f"Failed to upload backups of '{config.display_name}'")
                ok = False
        return self.upload_catalog() and ok

    def pull_all_from_cloud(self) -> bool:
        """
        Download the catalog and every historical backup.

        Latest archives are skipped; they are pulled per launch so the
        resolver can compare them first.
        """
        result = self.sync_catalog_from_cloud()
        if not result.success:
            return False
        ok = True
        for config in self._catalog.all_configs():
            target = self._backups.backup_dir(config)
            if not self._transport.download_dir(backup_key(config.config_id), target, exclude=LATEST_FILE):
                logger.error(f"Failed to download backups of '{config.display_name}'")
                ok = False
        return ok

    # ── Stop / shutdown ──

    def on_stop(
        self,
        local_id: str,
        ctx: PathContext | None = None,
        elapsed_seconds: int = 0,
    ) -> BackupRecord | None:
        """Auto backup after the application exits; cloud work goes to the background."""
        config = self._catalog.find_config_by_local_id(local_id)
        if config is None or not config.save_paths:
            logger.info(f"Auto backup skipped for '{local_id}': no save paths configured")
            return None

        record = None
        stale: list[BackupRecord] = []
        if self._config.auto_backup_on_exit:
            note = f"Auto backup after {elapsed_seconds // 60} min"
            record = self._backups.create_backup(config.config_id, ctx, note, is_auto=True)
            stale = self._backups.cleanup_old_auto_backups(config.config_id, self._config.max_auto_backups)
        elif self._config.realtime_sync_enabled:
            self._backups.create_realtime_snapshot(config.config_id, ctx)

        if self.enabled:
            for old in stale:
                self._tasks.run(f"delete_{old.name}", self.delete_backup_from_cloud, old)
            if record is not None:
                self.upload_backup_in_background(record)
            if self._config.realtime_sync_enabled:
                self._tasks.run(f"push_{config.config_id[:8]}", self.push_latest, config, ctx, False)
        return record

    def shutdown(self, timeout: float | None = None) -> bool:
        """Drain background transfers; anything still running is left for the next start."""
        timeout = self._config.shutdown_timeout if timeout is None else timeout
        if not self._tasks.has_active:
            return True
        logger.info(f"Waiting for {self._tasks.active_count} background task(s): {', '.join(self._tasks.active_task_names())}")
        done = self._tasks.wait_for_all(timeout)
        if not done:
            logger.warning("Abandoning unfinished uploads; they are retried on next start")
        return done
