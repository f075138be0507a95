"""Save config models — what to capture for one tracked application."""

from __future__ import annotations

import ntpath
import posixpath
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_time(raw: str | None) -> datetime | None:
    """Parse an ISO timestamp from the catalog; naive values are taken as UTC."""
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class SavePath:
    """A logical save location (may contain {GameDir}-style tokens)."""

    path: str
    is_directory: bool = False

    @property
    def entry_name(self) -> str:
        """Archive entry name — the final component of the template path."""
        trimmed = self.path.rstrip("/\\")
        name = ntpath.basename(trimmed) if "\\" in trimmed else posixpath.basename(trimmed)
        return name or trimmed


@dataclass
class SaveConfig:
    """
    Per-application save configuration.

    ``config_id`` is the cross-device join key; ``local_ids`` lists every
    device-local application id mapped to this config.  The ``cloud_*`` fields
    mirror the remote ``Latest`` head as of the last catalog sync.
    """

    display_name: str
    config_id: str = field(default_factory=lambda: uuid4().hex)
    local_ids: list[str] = field(default_factory=list)
    excluded_local_ids: list[str] = field(default_factory=list)
    save_paths: list[SavePath] = field(default_factory=list)
    restore_exclude_paths: list[SavePath] = field(default_factory=list)
    disable_auto_match: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    # Cloud mirror
    cloud_latest_crc: str = ""
    cloud_version_history: list[str] = field(default_factory=list)
    cloud_latest_time: datetime | None = None
    cloud_latest_size: int = 0

    # ── Local id bookkeeping ──

    def contains_local_id(self, local_id: str) -> bool:
        return local_id in self.local_ids

    def add_local_id(self, local_id: str) -> bool:
        if not local_id or local_id in self.local_ids:
            return False
        self.local_ids.append(local_id)
        self.updated_at = _now()
        return True

    def remove_local_id(self, local_id: str) -> bool:
        if local_id not in self.local_ids:
            return False
        self.local_ids.remove(local_id)
        self.updated_at = _now()
        return True

    def exclude_local_id(self, local_id: str) -> bool:
        if not local_id or local_id in self.excluded_local_ids:
            return False
        self.excluded_local_ids.append(local_id)
        self.updated_at = _now()
        return True

    def unexclude_local_id(self, local_id: str) -> bool:
        if local_id not in self.excluded_local_ids:
            return False
        self.excluded_local_ids.remove(local_id)
        self.updated_at = _now()
        return True

    def is_local_id_excluded(self, local_id: str) -> bool:
        return local_id in self.excluded_local_ids

    # ── Cloud mirror ──

    def set_cloud_latest(
        self, crc: str, history: list[str], when: datetime | None, size: int
    ) -> None:
        self.cloud_latest_crc = crc
        self.cloud_version_history = list(history)
        self.cloud_latest_time = when
        self.cloud_latest_size = size


def save_config_to_dict(config: SaveConfig) -> dict[str, Any]:
    d = asdict(config)
    for key in ("created_at", "updated_at", "cloud_latest_time"):
        d[key] = format_time(getattr(config, key))
    return d


def save_config_from_dict(data: dict[str, Any]) -> SaveConfig:
    """Rebuild a SaveConfig from catalog JSON, ignoring unknown keys."""
    local_ids: list[str] = []
    for raw in data.get("local_ids") or []:
        if raw and raw not in local_ids:
            local_ids.append(str(raw))

    config = SaveConfig(
        display_name=data.get("display_name") or "",
        config_id=data.get("config_id") or uuid4().hex,
        local_ids=local_ids,
        excluded_local_ids=[str(x) for x in data.get("excluded_local_ids") or []],
        save_paths=[SavePath(**p) for p in data.get("save_paths") or []],
        restore_exclude_paths=[SavePath(**p) for p in data.get("restore_exclude_paths") or []],
        disable_auto_match=bool(data.get("disable_auto_match", False)),
        cloud_latest_crc=data.get("cloud_latest_crc") or "",
        cloud_version_history=list(data.get("cloud_version_history") or []),
        cloud_latest_time=parse_time(data.get("cloud_latest_time")),
        cloud_latest_size=int(data.get("cloud_latest_size") or 0),
    )
    config.created_at = parse_time(data.get("created_at")) or config.created_at
    config.updated_at = parse_time(data.get("updated_at")) or config.updated_at
    return config
