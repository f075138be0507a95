"""Sync conflict resolver — classify local vs cloud version state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from savesync.core.backup import BackupManager
    from savesync.models.save_config import SaveConfig


class SyncStatus(StrEnum):
    IN_SYNC = "InSync"
    LOCAL_BEHIND = "LocalBehind"
    CLOUD_BEHIND = "CloudBehind"
    CONFLICT = "Conflict"
    LOCAL_MISSING = "LocalMissing"
    CLOUD_MISSING = "CloudMissing"
    BOTH_MISSING = "BothMissing"

    @property
    def needs_pull(self) -> bool:
        return self in (SyncStatus.LOCAL_BEHIND, SyncStatus.LOCAL_MISSING)


@dataclass
class SyncCheck:
    """Both replicas' heads for one config, plus the classification."""

    config_id: str
    display_name: str
    status: SyncStatus
    local_crc: str = ""
    local_history: list[str] = field(default_factory=list)
    local_time: datetime | None = None
    local_size: int = 0
    cloud_crc: str = ""
    cloud_history: list[str] = field(default_factory=list)
    cloud_time: datetime | None = None
    cloud_size: int = 0


def classify(
    local_crc: str,
    local_history: list[str],
    local_exists: bool,
    cloud_crc: str,
    cloud_history: list[str],
) -> SyncStatus:
    """
    Relationship between the local and cloud heads.

    Checks run in a fixed order: cloud presence, local presence, equality,
    local-is-ancestor, cloud-is-ancestor; anything else is a conflict.
    """
    if not cloud_crc:
        return SyncStatus.CLOUD_MISSING if local_exists else SyncStatus.BOTH_MISSING
    if not local_exists:
        return SyncStatus.LOCAL_MISSING
    if local_crc == cloud_crc:
        return SyncStatus.IN_SYNC
    if local_crc in cloud_history:
        return SyncStatus.LOCAL_BEHIND
    if cloud_crc in local_history:
        return SyncStatus.CLOUD_BEHIND
    return SyncStatus.CONFLICT


class SyncResolver:
    """Reads the local Latest archive and the cached cloud mirror; never touches the network."""

    def __init__(self, backup_manager: BackupManager) -> None:
        self._backups = backup_manager

    def check(self, config: SaveConfig) -> SyncCheck:
        info = self._backups.read_latest_info(config)
        local_size = 0
        local_time = None
        if info is not None:
            path = self._backups.latest_path(config)
            stat = path.stat()
            local_size = stat.st_size
            local_time = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

        check = SyncCheck(
            config_id=config.config_id,
            display_name=config.display_name,
            status=classify(
                local_crc=info.crc if info else "",
                local_history=list(info.version_history) if info else [],
                local_exists=info is not None,
                cloud_crc=config.cloud_latest_crc,
                cloud_history=list(config.cloud_version_history),
            ),
            local_crc=info.crc if info else "",
            local_history=list(info.version_history) if info else [],
            local_time=local_time,
            local_size=local_size,
            cloud_crc=config.cloud_latest_crc,
            cloud_history=list(config.cloud_version_history),
            cloud_time=config.cloud_latest_time,
            cloud_size=config.cloud_latest_size,
        )
        logger.info(
            f"Sync check '{config.display_name}': {check.status} "
            f"(local {check.local_crc or '-'}, cloud {check.cloud_crc or '-'})"
        )
        return check
