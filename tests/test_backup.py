"""Tests for the BackupManager."""

from __future__ import annotations

import zipfile
from pathlib import Path

import pytest

from savesync.config import Config
from savesync.core.archive import INFO_ENTRY, create_archive, read_archive_info
from savesync.core.backup import LATEST_FILE, BackupManager
from savesync.core.path_resolver import PathContext
from savesync.data.catalog import Catalog
from savesync.errors import InvalidArchiveError, PathNotFoundError, SaveSyncError
from savesync.models.save_config import SaveConfig, SavePath


def _bump(game_dir: Path, n: int) -> None:
    (game_dir / "saves" / "slot1.sav").write_bytes(f"progress {n}".encode())


class TestBackupCreation:
    def test_creates_archive_and_record(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, config: Config
    ) -> None:
        record = manager.create_backup(save_config.config_id, ctx, note="before boss")

        zip_path = manager.full_path(record)
        assert zip_path.is_file()
        assert zip_path.parent == manager.backup_dir(save_config)
        assert zip_path.parent.name == f"Test Game_{save_config.config_id[:8]}"
        assert not Path(record.backup_file_path).is_absolute()
        assert record.name.startswith("Backup_")
        assert record.file_size == zip_path.stat().st_size
        assert manager.list_backups(save_config.config_id) == [record]

        info = read_archive_info(zip_path)
        assert info is not None
        assert info.description == "before boss"
        assert info.crc == record.crc
        assert info.display_name == "Test Game"

    def test_missing_path_aborts(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, catalog: Catalog
    ) -> None:
        save_config.save_paths.append(SavePath("{GameDir}/gone.sav"))
        catalog.save_config(save_config)

        with pytest.raises(PathNotFoundError):
            manager.create_backup(save_config.config_id, ctx)

        backup_dir = manager.backup_dir(save_config)
        assert not backup_dir.exists() or not any(backup_dir.iterdir())
        assert manager.list_backups(save_config.config_id) == []

    def test_no_save_paths(self, manager: BackupManager, catalog: Catalog) -> None:
        cfg = catalog.get_or_create_config("empty", "Empty")
        with pytest.raises(SaveSyncError):
            manager.create_backup(cfg.config_id)

    def test_same_second_backups_get_unique_names(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext
    ) -> None:
        names = {manager.create_backup(save_config.config_id, ctx).name for _ in range(3)}
        assert len(names) == 3

    def test_inherits_latest_lineage(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path
    ) -> None:
        latest = manager.create_realtime_snapshot(save_config.config_id, ctx)
        _bump(game_dir, 1)
        record = manager.create_backup(save_config.config_id, ctx)
        assert record.version_history == [latest.crc]

    def test_realtime_sync_also_snapshots(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, config: Config
    ) -> None:
        config.realtime_sync_enabled = True
        record = manager.create_backup(save_config.config_id, ctx)
        latest = manager.latest_backup(save_config.config_id)
        assert latest is not None
        assert latest.crc == record.crc
        assert manager.latest_path(save_config).is_file()


class TestRealtimeSnapshot:
    def test_history_grows_by_one(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path
    ) -> None:
        previous = manager.create_realtime_snapshot(save_config.config_id, ctx)
        assert previous.version_history == []

        for n in range(1, 5):
            _bump(game_dir, n)
            current = manager.create_realtime_snapshot(save_config.config_id, ctx)
            assert len(current.version_history) == len(previous.version_history) + 1
            assert current.version_history[-1] == previous.crc
            assert current.crc not in current.version_history
            previous = current

    def test_only_one_latest(self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path) -> None:
        manager.create_realtime_snapshot(save_config.config_id, ctx)
        _bump(game_dir, 1)
        manager.create_realtime_snapshot(save_config.config_id, ctx)
        latest = [r for r in manager.list_backups(save_config.config_id) if r.is_latest]
        assert len(latest) == 1
        assert list(manager.backup_dir(save_config).glob("*.zip")) == [manager.latest_path(save_config)]

    def test_base_history_is_used(self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path) -> None:
        first = manager.create_realtime_snapshot(save_config.config_id, ctx)
        _bump(game_dir, 1)
        second = manager.create_realtime_snapshot(save_config.config_id, ctx, base_version_history=["AAAAAAAA"])
        assert second.version_history == ["AAAAAAAA", first.crc]

    def test_unchanged_content_keeps_crc_out_of_history(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext
    ) -> None:
        first = manager.create_realtime_snapshot(save_config.config_id, ctx)
        again = manager.create_realtime_snapshot(save_config.config_id, ctx)
        assert again.crc == first.crc
        assert again.crc not in again.version_history

    def test_history_embedded_in_archive(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path
    ) -> None:
        first = manager.create_realtime_snapshot(save_config.config_id, ctx)
        _bump(game_dir, 1)
        manager.create_realtime_snapshot(save_config.config_id, ctx)
        info = manager.read_latest_info(save_config)
        assert info is not None
        assert info.version_history == [first.crc]

    def test_lineage_survives_catalog_loss(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path, catalog: Catalog
    ) -> None:
        first = manager.create_realtime_snapshot(save_config.config_id, ctx)
        catalog.remove_backup(catalog.latest_for(save_config.config_id))
        _bump(game_dir, 1)
        second = manager.create_realtime_snapshot(save_config.config_id, ctx)
        assert second.version_history == [first.crc]

    def test_unreadable_latest_is_replaced(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path
    ) -> None:
        first = manager.create_realtime_snapshot(save_config.config_id, ctx)
        manager.latest_path(save_config).write_bytes(b"not a zip")
        assert manager.read_latest_info(save_config) is None

        _bump(game_dir, 1)
        second = manager.create_realtime_snapshot(save_config.config_id, ctx)
        info = manager.read_latest_info(save_config)
        assert info is not None
        assert info.crc == second.crc
        assert second.version_history == [first.crc]


class TestRestore:
    def test_restore_backup(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path
    ) -> None:
        record = manager.create_backup(save_config.config_id, ctx)
        _bump(game_dir, 9)
        manager.restore_backup(record, ctx)
        assert (game_dir / "saves" / "slot1.sav").read_bytes() == b"slot one"

    def test_restore_missing_file(self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext) -> None:
        record = manager.create_backup(save_config.config_id, ctx)
        manager.full_path(record).unlink()
        with pytest.raises(InvalidArchiveError):
            manager.restore_backup(record, ctx)

    def test_adopt_latest_uses_embedded_state(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, game_dir: Path, tmp_path: Path
    ) -> None:
        manager.create_realtime_snapshot(save_config.config_id, ctx)
        _bump(game_dir, 1)
        latest = manager.create_realtime_snapshot(save_config.config_id, ctx)
        downloaded = tmp_path / "download.zip"
        downloaded.write_bytes(manager.latest_path(save_config).read_bytes())

        adopted = manager.adopt_latest(save_config.config_id, downloaded)

        assert adopted.crc == latest.crc
        assert adopted.version_history == latest.version_history
        assert not downloaded.exists()
        assert manager.latest_backup(save_config.config_id) is adopted


class TestMaintenance:
    def test_cleanup_keeps_newest_autos(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext
    ) -> None:
        autos = [manager.create_backup(save_config.config_id, ctx, is_auto=True) for _ in range(4)]
        manual = manager.create_backup(save_config.config_id, ctx, note="keep")

        deleted = manager.cleanup_old_auto_backups(save_config.config_id, 2)

        assert {r.id for r in deleted} == {autos[0].id, autos[1].id}
        assert all(not manager.full_path(r).exists() for r in deleted)
        remaining = {r.id for r in manager.list_backups(save_config.config_id)}
        assert remaining == {autos[2].id, autos[3].id, manual.id}

    def test_cleanup_unlimited(self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext) -> None:
        manager.create_backup(save_config.config_id, ctx, is_auto=True)
        assert manager.cleanup_old_auto_backups(save_config.config_id, 0) == []

    def test_delete_last_prunes_directory(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext
    ) -> None:
        record = manager.create_backup(save_config.config_id, ctx)
        manager.delete_backup(record)
        assert not manager.full_path(record).exists()
        assert not manager.backup_dir(save_config).exists()
        assert manager.list_backups(save_config.config_id) == []

    def test_delete_keeps_directory_with_others(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext
    ) -> None:
        first = manager.create_backup(save_config.config_id, ctx)
        manager.create_backup(save_config.config_id, ctx)
        manager.delete_backup(first)
        assert manager.backup_dir(save_config).is_dir()

    def test_update_description_makes_manual(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext
    ) -> None:
        record = manager.create_backup(save_config.config_id, ctx, is_auto=True)
        manager.update_description(record, "keep forever")

        assert not record.is_auto_backup
        info = read_archive_info(manager.full_path(record))
        assert info is not None
        assert info.description == "keep forever"
        assert manager.cleanup_old_auto_backups(save_config.config_id, 1) == []

    def test_import_backup(
        self, manager: BackupManager, save_config: SaveConfig, ctx: PathContext, save_paths: list[SavePath], tmp_path: Path
    ) -> None:
        external = tmp_path / "external.zip"
        summary = create_archive(save_paths, ctx, external)

        record = manager.import_backup(save_config.config_id, external)

        assert record.crc == summary.crc
        assert record.name.startswith("Imported_")
        assert external.exists()
        with zipfile.ZipFile(manager.full_path(record)) as zf:
            assert INFO_ENTRY in zf.namelist()

    def test_import_rejects_plain_zip(self, manager: BackupManager, save_config: SaveConfig, tmp_path: Path) -> None:
        plain = tmp_path / "plain.zip"
        with zipfile.ZipFile(plain, "w") as zf:
            zf.writestr("file.txt", "x")
        with pytest.raises(InvalidArchiveError):
            manager.import_backup(save_config.config_id, plain)
        assert manager.list_backups(save_config.config_id) == []

    def test_latest_file_name(self, manager: BackupManager, save_config: SaveConfig) -> None:
        assert manager.latest_path(save_config).name == LATEST_FILE
