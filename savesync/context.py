"""Application context — service container for dependency injection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from savesync.config import Config
    from savesync.core.backup import BackupManager
    from savesync.core.rclone import RcloneService
    from savesync.core.sync import SyncManager
    from savesync.core.tasks import BackgroundTaskManager
    from savesync.data.catalog import Catalog


@dataclass
class AppContext:
    """
    Central service container.

    Built once by the host entry point; commands receive it instead of
    constructing services themselves.
    """

    config: Config
    catalog: Catalog
    backup_manager: BackupManager
    transport: RcloneService
    tasks: BackgroundTaskManager
    sync_manager: SyncManager
