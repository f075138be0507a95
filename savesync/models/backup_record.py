"""Backup record models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from savesync.models.save_config import format_time, parse_time

LATEST_NAME = "Latest"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class PathMapping:
    """Manifest entry mapping an archive entry back to its logical path."""

    original_path: str
    is_directory: bool
    entry_name: str


@dataclass
class ArchiveInfo:
    """Metadata embedded in every archive (written as backup_info.json)."""

    description: str = ""
    created_at: datetime = field(default_factory=_now)
    display_name: str = ""
    format_version: int = 1
    crc: str = ""
    version_history: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["created_at"] = format_time(self.created_at)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveInfo:
        return cls(
            description=data.get("description") or "",
            created_at=parse_time(data.get("created_at")) or _now(),
            display_name=data.get("display_name") or "",
            format_version=int(data.get("format_version") or 1),
            crc=data.get("crc") or "",
            version_history=list(data.get("version_history") or []),
        )


@dataclass
class BackupRecord:
    """One captured snapshot in the catalog."""

    config_id: str
    name: str
    backup_file_path: str  # relative to the data directory
    id: str = field(default_factory=lambda: uuid4().hex)
    description: str = ""
    created_at: datetime = field(default_factory=_now)
    file_size: int = 0
    is_auto_backup: bool = False
    crc: str = ""
    version_history: list[str] = field(default_factory=list)

    @property
    def is_latest(self) -> bool:
        return self.name == LATEST_NAME

    @property
    def file_name(self) -> str:
        return self.backup_file_path.replace("\\", "/").rsplit("/", 1)[-1]

    def to_info(self, display_name: str = "") -> ArchiveInfo:
        return ArchiveInfo(
            description=self.description,
            created_at=self.created_at,
            display_name=display_name,
            crc=self.crc,
            version_history=list(self.version_history),
        )


def backup_record_to_dict(record: BackupRecord) -> dict[str, Any]:
    d = asdict(record)
    d["created_at"] = format_time(record.created_at)
    return d


def backup_record_from_dict(data: dict[str, Any]) -> BackupRecord:
    record = BackupRecord(
        config_id=data.get("config_id") or "",
        name=data.get("name") or "",
        backup_file_path=data.get("backup_file_path") or "",
        description=data.get("description") or "",
        file_size=int(data.get("file_size") or 0),
        is_auto_backup=bool(data.get("is_auto_backup", False)),
        crc=data.get("crc") or "",
        version_history=list(data.get("version_history") or []),
    )
    if data.get("id"):
        record.id = data["id"]
    record.created_at = parse_time(data.get("created_at")) or record.created_at
    return record
