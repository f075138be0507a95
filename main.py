"""Application entry point — wires services and exposes the host lifecycle as a CLI."""

from __future__ import annotations

import argparse
import shutil
import sys
from pathlib import Path

from loguru import logger

from savesync.config import Config, get_config
from savesync.context import AppContext
from savesync.core.backup import BackupManager
from savesync.core.path_resolver import PathContext, to_logical
from savesync.core.rclone import RcloneService
from savesync.core.resolver import SyncCheck
from savesync.core.sync import ConflictChoice, SyncManager
from savesync.core.tasks import BackgroundTaskManager
from savesync.data.catalog import Catalog
from savesync.errors import ConflictUnresolvedError, SaveSyncError
from savesync.logger import setup_logger
from savesync.models.backup_record import BackupRecord
from savesync.models.save_config import SaveConfig, SavePath
from savesync.utils import format_size, format_time


def _report_task(task_id: str, error: BaseException | None) -> None:
    if error is not None:
        logger.error(f"Background sync failed ({task_id}): {error}")


def create_context(config: Config | None = None) -> AppContext:
    """Wire all services and return an AppContext."""
    config = config or get_config()

    catalog = Catalog(config.data_dir)
    catalog.load()

    backup_manager = BackupManager(config, catalog)
    transport = RcloneService.from_config(config)
    tasks = BackgroundTaskManager(on_complete=_report_task)
    sync_manager = SyncManager(config, backup_manager, transport, tasks)

    return AppContext(
        config=config,
        catalog=catalog,
        backup_manager=backup_manager,
        transport=transport,
        tasks=tasks,
        sync_manager=sync_manager,
    )


# ── Commands ──


def _path_context(args: argparse.Namespace) -> PathContext:
    return PathContext(install_dir=args.install_dir, emulator_dir=args.emulator_dir)


def _require_config(app: AppContext, local_id: str):
    config = app.catalog.find_config_by_local_id(local_id)
    if config is None:
        raise SaveSyncError(f"No save config linked to '{local_id}'")
    return config


def _prompt_conflict(check: SyncCheck) -> str:
    print(f"Save conflict for '{check.display_name}':")
    print(f"  local: {check.local_crc}  {format_time(check.local_time)}  {format_size(check.local_size)}")
    print(f"  cloud: {check.cloud_crc}  {format_time(check.cloud_time)}  {format_size(check.cloud_size)}")
    answer = input("[c]loud / [l]ocal / cancel? ").strip().lower()
    if answer.startswith("c") and answer != "cancel":
        return ConflictChoice.USE_CLOUD
    if answer.startswith("l"):
        return ConflictChoice.KEEP_LOCAL
    return ConflictChoice.CANCEL


def cmd_add(app: AppContext, args: argparse.Namespace) -> int:
    config = app.catalog.find_auto_match(args.name, args.local_id)
    if config is not None:
        app.catalog.link_local_id(config.config_id, args.local_id)
        print(f"Linked '{args.local_id}' to existing config '{config.display_name}'")
        return 0

    config = app.catalog.get_or_create_config(args.local_id, args.name)
    for raw in args.file or []:
        config.save_paths.append(SavePath(to_logical(raw, args.install_dir, args.emulator_dir), False))
    for raw in args.dir or []:
        config.save_paths.append(SavePath(to_logical(raw, args.install_dir, args.emulator_dir), True))
    for raw in args.exclude or []:
        config.restore_exclude_paths.append(
            SavePath(to_logical(raw, args.install_dir, args.emulator_dir), Path(raw).is_dir())
        )
    app.catalog.save_config(config)
    print(f"Config {config.config_id} '{config.display_name}' with {len(config.save_paths)} path(s)")
    return 0


def cmd_start(app: AppContext, args: argparse.Namespace) -> int:
    result = app.sync_manager.on_start()
    if not result.success:
        print(f"Catalog sync failed: {result.error}")
        return 1
    if result.new_config_ids:
        print(f"{len(result.new_config_ids)} new config(s) from the cloud")
    return 0


def cmd_launch(app: AppContext, args: argparse.Namespace) -> int:
    decide = None
    if args.choice:
        decide = lambda _check: args.choice  # noqa: E731
    elif sys.stdin.isatty():
        decide = _prompt_conflict

    try:
        decision = app.sync_manager.on_before_launch(
            args.local_id, _path_context(args), decide=decide, require_sync=args.require_sync
        )
    except ConflictUnresolvedError as e:
        print(str(e))
        return 2

    if decision.status is not None:
        print(f"Sync status: {decision.status}")
    if decision.error:
        print(f"Sync error: {decision.error}")
    return 0 if decision.proceed else 1


def cmd_stop(app: AppContext, args: argparse.Namespace) -> int:
    record = app.sync_manager.on_stop(args.local_id, _path_context(args), args.elapsed)
    if record is not None:
        print(f"Auto backup {record.name} ({format_size(record.file_size)})")
    return 0


def cmd_backup(app: AppContext, args: argparse.Namespace) -> int:
    config = _require_config(app, args.local_id)
    record = app.sync_manager.create_backup(config.config_id, _path_context(args), args.note or "")
    print(f"Created {record.name} ({format_size(record.file_size)}, CRC {record.crc})")
    return 0


def _find_backup(app: AppContext, config: SaveConfig, key: str) -> BackupRecord | None:
    """Look a backup of ``config`` up by id, then by name."""
    record = app.catalog.get_backup(key)
    if record is not None and record.config_id == config.config_id:
        return record
    for record in app.backup_manager.list_backups(config.config_id):
        if record.name == key:
            return record
    return None


def cmd_restore(app: AppContext, args: argparse.Namespace) -> int:
    config = _require_config(app, args.local_id)
    if args.backup:
        record = _find_backup(app, config, args.backup)
    else:
        record = next((r for r in app.backup_manager.list_backups(config.config_id) if not r.is_latest), None)
    if record is None:
        print("No matching backup")
        return 1
    app.sync_manager.restore_backup(record, _path_context(args))
    print(f"Restored {record.name}")
    return 0


def cmd_import(app: AppContext, args: argparse.Namespace) -> int:
    config = _require_config(app, args.local_id)
    record = app.backup_manager.import_backup(config.config_id, Path(args.archive), args.note or "")
    if app.sync_manager.enabled:
        app.sync_manager.upload_backup_in_background(record)
    print(f"Imported as {record.name}")
    return 0


def cmd_list(app: AppContext, args: argparse.Namespace) -> int:
    if not args.local_id:
        for config in app.catalog.all_configs():
            ids = ", ".join(config.local_ids) or "-"
            print(f"{config.config_id}  {config.display_name}  [{ids}]")
        return 0

    config = _require_config(app, args.local_id)
    for record in app.backup_manager.list_backups(config.config_id):
        kind = "auto" if record.is_auto_backup else "manual"
        if record.is_latest:
            kind = "head"
        print(
            f"{format_time(record.created_at)}  {record.name:<24} {kind:<6} "
            f"{format_size(record.file_size):>9}  {record.crc}  {record.description}"
        )
    return 0


def cmd_status(app: AppContext, args: argparse.Namespace) -> int:
    config = _require_config(app, args.local_id)
    check = app.sync_manager.resolver.check(config)
    print(f"{config.display_name}: {check.status}")
    print(f"  local {check.local_crc or '-'} ({len(check.local_history)} ancestor(s))")
    print(f"  cloud {check.cloud_crc or '-'} ({len(check.cloud_history)} ancestor(s))")
    return 0


def cmd_note(app: AppContext, args: argparse.Namespace) -> int:
    config = _require_config(app, args.local_id)
    record = _find_backup(app, config, args.backup)
    if record is None:
        print("No matching backup")
        return 1
    record = app.backup_manager.update_description(record, args.text)
    if app.sync_manager.enabled:
        app.sync_manager.upload_backup_in_background(record)
    return 0


def cmd_unlink(app: AppContext, args: argparse.Namespace) -> int:
    config = _require_config(app, args.local_id)
    app.catalog.clear_match(config.config_id, args.local_id)
    print(f"Unlinked '{args.local_id}' from '{config.display_name}'; auto-match disabled")
    return 0


def cmd_automatch(app: AppContext, args: argparse.Namespace) -> int:
    app.catalog.enable_auto_match(args.config_id)
    return 0


def cmd_remove(app: AppContext, args: argparse.Namespace) -> int:
    """Forget a config and delete its local backups; cloud copies are left alone."""
    config = _require_config(app, args.local_id)
    backup_dir = app.backup_manager.backup_dir(config)
    removed = app.catalog.delete_config(config.config_id)
    if backup_dir.is_dir():
        shutil.rmtree(backup_dir)
    if app.sync_manager.enabled:
        app.sync_manager.upload_catalog()
    print(f"Removed '{config.display_name}' and {len(removed)} backup(s)")
    return 0


def cmd_check(app: AppContext, args: argparse.Namespace) -> int:
    provider = app.transport.provider
    print(f"{provider.display_name} (rclone type '{provider.rclone_type}') at {app.transport.remote_base}")
    if not app.transport.is_available():
        print(f"rclone not found: {app.config.rclone_path}")
        return 1
    if not app.transport.test_connection():
        print("Cannot reach the remote")
        return 1
    if not app.transport.ensure_remote_dir():
        print("Cannot create the remote root")
        return 1
    print("Cloud storage OK")
    return 0


def cmd_push_all(app: AppContext, args: argparse.Namespace) -> int:
    return 0 if app.sync_manager.upload_all_backups() else 1


def cmd_pull_all(app: AppContext, args: argparse.Namespace) -> int:
    return 0 if app.sync_manager.pull_all_from_cloud() else 1


# ── Parser ──


def add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--install-dir", help="Install directory used for {GameDir} paths")
    parser.add_argument("--emulator-dir", help="Emulator directory used for {EmulatorDir} paths")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SaveSync (save backup & cloud sync)")
    parser.add_argument("--data-dir", help="Data directory (default ~/.local/share/savesync)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    add_p = sub.add_parser("add", help="Register save paths for an application")
    add_p.add_argument("local_id")
    add_p.add_argument("name", help="Display name")
    add_p.add_argument("--file", action="append", help="Save file (repeatable)")
    add_p.add_argument("--dir", action="append", help="Save directory (repeatable)")
    add_p.add_argument("--exclude", action="append", help="Path preserved on restore (repeatable)")
    add_common_flags(add_p)
    add_p.set_defaults(func=cmd_add)

    start_p = sub.add_parser("start", help="Host start: pull the cloud catalog")
    start_p.set_defaults(func=cmd_start)

    launch_p = sub.add_parser("launch", help="Before launch: bring the save up to date")
    launch_p.add_argument("local_id")
    launch_p.add_argument("--require-sync", action="store_true", help="Fail if the cloud cannot be reached")
    launch_p.add_argument(
        "--choice",
        choices=[ConflictChoice.USE_CLOUD, ConflictChoice.KEEP_LOCAL, ConflictChoice.CANCEL],
        help="Answer to give if a conflict is found",
    )
    add_common_flags(launch_p)
    launch_p.set_defaults(func=cmd_launch)

    stop_p = sub.add_parser("stop", help="After exit: auto backup and upload")
    stop_p.add_argument("local_id")
    stop_p.add_argument("--elapsed", type=int, default=0, help="Session length in seconds")
    add_common_flags(stop_p)
    stop_p.set_defaults(func=cmd_stop)

    backup_p = sub.add_parser("backup", help="Create a manual backup")
    backup_p.add_argument("local_id")
    backup_p.add_argument("--note", help="Backup description")
    add_common_flags(backup_p)
    backup_p.set_defaults(func=cmd_backup)

    restore_p = sub.add_parser("restore", help="Restore a backup (default: newest)")
    restore_p.add_argument("local_id")
    restore_p.add_argument("--backup", help="Backup id or name")
    add_common_flags(restore_p)
    restore_p.set_defaults(func=cmd_restore)

    import_p = sub.add_parser("import", help="Import an external backup archive")
    import_p.add_argument("local_id")
    import_p.add_argument("archive")
    import_p.add_argument("--note", help="Backup description")
    import_p.set_defaults(func=cmd_import)

    list_p = sub.add_parser("list", help="List configs, or the backups of one")
    list_p.add_argument("local_id", nargs="?")
    list_p.set_defaults(func=cmd_list)

    status_p = sub.add_parser("status", help="Compare local and cloud heads")
    status_p.add_argument("local_id")
    status_p.set_defaults(func=cmd_status)

    note_p = sub.add_parser("note", help="Change a backup's description (keeps it from auto cleanup)")
    note_p.add_argument("local_id")
    note_p.add_argument("backup", help="Backup id or name")
    note_p.add_argument("text")
    note_p.set_defaults(func=cmd_note)

    unlink_p = sub.add_parser("unlink", help="Detach an application from its config")
    unlink_p.add_argument("local_id")
    unlink_p.set_defaults(func=cmd_unlink)

    automatch_p = sub.add_parser("automatch", help="Re-enable name matching for a config")
    automatch_p.add_argument("config_id")
    automatch_p.set_defaults(func=cmd_automatch)

    remove_p = sub.add_parser("remove", help="Forget a config and delete its local backups")
    remove_p.add_argument("local_id")
    remove_p.set_defaults(func=cmd_remove)

    sub.add_parser("check", help="Check rclone and the remote").set_defaults(func=cmd_check)
    sub.add_parser("push-all", help="Upload every backup").set_defaults(func=cmd_push_all)
    sub.add_parser("pull-all", help="Download every backup except Latest").set_defaults(func=cmd_pull_all)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = Config(Path(args.data_dir)) if args.data_dir else get_config()
    setup_logger(config.data_dir / "logs", verbose=args.verbose)

    app = create_context(config)
    try:
        return args.func(app, args)
    except SaveSyncError as e:
        logger.error(str(e))
        return 1
    finally:
        app.sync_manager.shutdown()


if __name__ == "__main__":
    sys.exit(main())
