"""Application settings — JSON-based, with file locking and batch update support."""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from savesync.models.cloud_provider import CloudProvider

_instance: "Config | None" = None

# Default data directory
_DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "savesync"


def get_config() -> Config:
    """Module-level factory — single global Config instance."""
    global _instance
    if _instance is None:
        _instance = Config()
    return _instance


def reset_config() -> None:
    """Reset the global config instance (for testing)."""
    global _instance
    _instance = None


class Config:
    """JSON-based application settings with file locking."""

    _DEFAULTS: dict[str, Any] = {
        "auto_backup_on_exit": True,
        "max_auto_backups": 10,
        "realtime_sync_enabled": False,
        # Cloud
        "cloud": {
            "enabled": False,
            "provider": CloudProvider.GOOGLE_DRIVE.value,
            "rclone_path": "rclone",
            "rclone_config": "",
            "remote_root": "SaveSync",
            "r2_bucket": "",
        },
        # Seconds to wait for background uploads on exit
        "shutdown_timeout": 300,
    }

    def __init__(self, data_dir: Path | None = None) -> None:
        self._data: dict[str, Any] = {}
        self._dir = data_dir or _DEFAULT_DATA_DIR
        self._path = self._dir / "config.json"
        self._lock = threading.Lock()
        self._defer_save = False
        self._load()

    def _load(self) -> None:
        """Load config from disk, merging with defaults."""
        self._data = json.loads(json.dumps(self._DEFAULTS))  # deep copy defaults
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as f:
                    user_data = json.load(f)
                self._deep_merge(self._data, user_data)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Failed to load config, using defaults: {e}")

    def _deep_merge(self, base: dict, override: dict) -> None:
        """Recursively merge override into base."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _save(self) -> None:
        """Persist config to disk with file locking."""
        if self._defer_save:
            return
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".tmp")
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, ensure_ascii=False, indent=2)
                tmp_path.replace(self._path)
            except OSError as e:
                logger.error(f"Failed to save config: {e}")
                if tmp_path.exists():
                    tmp_path.unlink(missing_ok=True)

    @contextmanager
    def batch_update(self) -> Iterator[None]:
        """Context manager for batching multiple config changes into a single write."""
        self._defer_save = True
        try:
            yield
        finally:
            self._defer_save = False
            self._save()

    # ── Generic access ──

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value by dot-separated key path."""
        parts = key.split(".")
        node = self._data
        for part in parts:
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return default
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a config value by dot-separated key path."""
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            if part not in node or not isinstance(node[part], dict):
                node[part] = {}
            node = node[part]
        node[parts[-1]] = value
        self._save()

    # ── Typed properties ──

    @property
    def data_dir(self) -> Path:
        return self._dir

    @property
    def auto_backup_on_exit(self) -> bool:
        return bool(self._data.get("auto_backup_on_exit", True))

    @auto_backup_on_exit.setter
    def auto_backup_on_exit(self, value: bool) -> None:
        self.set("auto_backup_on_exit", value)

    @property
    def max_auto_backups(self) -> int:
        """Auto-backups kept per config; 0 means unlimited."""
        return max(0, int(self._data.get("max_auto_backups", 10)))

    @max_auto_backups.setter
    def max_auto_backups(self, value: int) -> None:
        self.set("max_auto_backups", value)

    @property
    def realtime_sync_enabled(self) -> bool:
        return bool(self._data.get("realtime_sync_enabled", False))

    @realtime_sync_enabled.setter
    def realtime_sync_enabled(self, value: bool) -> None:
        self.set("realtime_sync_enabled", value)

    @property
    def cloud_sync_enabled(self) -> bool:
        return bool(self.get("cloud.enabled", False))

    @cloud_sync_enabled.setter
    def cloud_sync_enabled(self, value: bool) -> None:
        self.set("cloud.enabled", value)

    @property
    def cloud_provider(self) -> CloudProvider:
        raw = self.get("cloud.provider", CloudProvider.GOOGLE_DRIVE.value)
        try:
            return CloudProvider(raw)
        except ValueError:
            logger.warning(f"Unknown cloud provider '{raw}', falling back to Google Drive")
            return CloudProvider.GOOGLE_DRIVE

    @cloud_provider.setter
    def cloud_provider(self, value: CloudProvider) -> None:
        self.set("cloud.provider", CloudProvider(value).value)

    @property
    def rclone_path(self) -> str:
        return self.get("cloud.rclone_path", "rclone") or "rclone"

    @property
    def rclone_config(self) -> Path | None:
        raw = self.get("cloud.rclone_config", "")
        return Path(raw) if raw else None

    @property
    def remote_root(self) -> str:
        return (self.get("cloud.remote_root", "SaveSync") or "SaveSync").strip("/")

    @property
    def r2_bucket(self) -> str:
        return self.get("cloud.r2_bucket", "")

    @property
    def shutdown_timeout(self) -> float:
        return float(self._data.get("shutdown_timeout", 300))
