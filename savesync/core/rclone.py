"""Cloud transport — rclone subprocess wrapper with retry."""

from __future__ import annotations

import json
import shutil
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from savesync.models.cloud_provider import CloudProvider

if TYPE_CHECKING:
    from savesync.config import Config

MAX_RETRIES = 3
RETRY_DELAY = 2.0
PROCESS_TIMEOUT = 300.0

BACKUPS_PREFIX = "Backups"
CATALOG_KEY = "catalog.json"

_NOT_FOUND_MARKERS = (
    "directory not found",
    "object not found",
    "file not found",
    "not found",
    "404",
)


class RemoteExists(Enum):
    """Answer of an existence probe. UNKNOWN means the remote could not be asked."""

    TRUE = "true"
    FALSE = "false"
    UNKNOWN = "unknown"


@dataclass
class RcloneResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def not_found(self) -> bool:
        if self.success or self.timed_out:
            return False
        text = f"{self.stderr}\n{self.stdout}".lower()
        return any(marker in text for marker in _NOT_FOUND_MARKERS)


class CloudTransport(Protocol):
    """Byte mover used by the sync layer; keys are relative to the remote root."""

    def upload(self, local_path: Path, remote_key: str) -> bool: ...

    def download(self, remote_key: str, local_path: Path) -> bool: ...

    def delete(self, remote_key: str) -> bool: ...

    def exists(self, remote_key: str) -> RemoteExists: ...

    def list_files(self, remote_key: str = "") -> list[str] | None: ...

    def upload_dir(self, local_dir: Path, remote_key: str, exclude: str | None = None) -> bool: ...

    def download_dir(self, remote_key: str, local_dir: Path, exclude: str | None = None) -> bool: ...


def backup_key(config_id: str, file_name: str = "") -> str:
    """Remote key of a config's backup folder (or a file inside it)."""
    key = f"{BACKUPS_PREFIX}/{config_id}"
    return f"{key}/{file_name}" if file_name else key


class RcloneService:
    """
    Runs rclone against one remote rooted at ``<remote>:[bucket/]<root>``.

    Transfers are retried ``MAX_RETRIES`` times with a fixed delay; a
    not-found answer ends the attempt loop at once.
    """

    def __init__(
        self,
        rclone_path: str = "rclone",
        provider: CloudProvider = CloudProvider.GOOGLE_DRIVE,
        remote_root: str = "SaveSync",
        config_path: Path | None = None,
        bucket: str = "",
        retry_delay: float = RETRY_DELAY,
        timeout: float = PROCESS_TIMEOUT,
    ) -> None:
        self._rclone = rclone_path
        self._provider = provider
        self._root = remote_root.strip("/")
        self._config_path = config_path
        self._bucket = bucket.strip("/")
        self._retry_delay = retry_delay
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: Config) -> RcloneService:
        return cls(
            rclone_path=config.rclone_path,
            provider=config.cloud_provider,
            remote_root=config.remote_root,
            config_path=config.rclone_config,
            bucket=config.r2_bucket,
        )

    @property
    def provider(self) -> CloudProvider:
        return self._provider

    @property
    def remote_base(self) -> str:
        parts = [p for p in (self._bucket if self._provider.uses_bucket else "", self._root) if p]
        return f"{self._provider.remote_name}:{'/'.join(parts)}"

    def remote_path(self, remote_key: str = "") -> str:
        key = remote_key.strip("/")
        return f"{self.remote_base}/{key}" if key else self.remote_base

    # ── Process plumbing ──

    def _run(self, args: list[str], timeout: float | None = None) -> RcloneResult:
        cmd = [self._rclone, *args]
        if self._config_path:
            cmd += ["--config", str(self._config_path)]
        logger.debug(f">> {' '.join(cmd)}")
        try:
            proc = subprocess.run(  # noqa: S603
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"rclone {args[0]} timed out after {timeout or self._timeout:.0f}s")
            return RcloneResult(returncode=-1, stderr="timeout", timed_out=True)
        except OSError as e:
            logger.error(f"Cannot run rclone ({self._rclone}): {e}")
            return RcloneResult(returncode=-1, stderr=str(e))
        return RcloneResult(returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")

    def _run_with_retry(self, action: str, args: list[str]) -> RcloneResult:
        result = RcloneResult(returncode=-1)
        for attempt in range(1, MAX_RETRIES + 1):
            logger.debug(f"{action} attempt {attempt}/{MAX_RETRIES}")
            result = self._run(args)
            if result.success or result.not_found:
                return result
            logger.warning(f"{action} failed (attempt {attempt}/{MAX_RETRIES}): {result.stderr.strip()}")
            if attempt < MAX_RETRIES:
                time.sleep(self._retry_delay)
        return result

    # ── Transport ──

    def upload(self, local_path: Path, remote_key: str) -> bool:
        if not local_path.is_file():
            logger.error(f"Local file not found, not uploading: {local_path}")
            return False
        result = self._run_with_retry(
            f"Upload {local_path.name}",
            ["copyto", str(local_path), self.remote_path(remote_key)],
        )
        if result.success:
            logger.info(f"Uploaded {local_path.name} -> {remote_key}")
        return result.success

    def download(self, remote_key: str, local_path: Path) -> bool:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        result = self._run_with_retry(
            f"Download {remote_key}",
            ["copyto", self.remote_path(remote_key), str(local_path)],
        )
        if result.success:
            logger.info(f"Downloaded {remote_key}")
        elif result.not_found:
            logger.info(f"Remote file not found: {remote_key}")
        return result.success

    def delete(self, remote_key: str) -> bool:
        """Delete a remote file; a file that is already gone counts as deleted."""
        result = self._run_with_retry(f"Delete {remote_key}", ["deletefile", self.remote_path(remote_key)])
        if result.not_found:
            logger.info(f"Remote file not found (already deleted): {remote_key}")
            return True
        return result.success

    def exists(self, remote_key: str) -> RemoteExists:
        result = self._run_with_retry(f"Probe {remote_key}", ["lsf", self.remote_path(remote_key)])
        if result.success:
            return RemoteExists.TRUE if result.stdout.strip() else RemoteExists.FALSE
        if result.not_found:
            return RemoteExists.FALSE
        return RemoteExists.UNKNOWN

    def list_files(self, remote_key: str = "") -> list[str] | None:
        """Relative paths of every file under ``remote_key``; None when the listing failed."""
        result = self._run_with_retry(
            f"List {remote_key or '/'}",
            ["lsjson", self.remote_path(remote_key), "--recursive", "--files-only"],
        )
        if result.not_found:
            return []
        if not result.success:
            return None
        try:
            entries = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable lsjson output: {e}")
            return None
        return [entry["Path"] for entry in entries if "Path" in entry]

    def upload_dir(self, local_dir: Path, remote_key: str, exclude: str | None = None) -> bool:
        args = ["copy", str(local_dir), self.remote_path(remote_key)]
        if exclude:
            args += ["--exclude", exclude]
        return self._run_with_retry(f"Upload dir {local_dir}", args).success

    def download_dir(self, remote_key: str, local_dir: Path, exclude: str | None = None) -> bool:
        local_dir.mkdir(parents=True, exist_ok=True)
        args = ["copy", self.remote_path(remote_key), str(local_dir)]
        if exclude:
            args += ["--exclude", exclude]
        result = self._run_with_retry(f"Download dir {remote_key or '/'}", args)
        if result.not_found:
            logger.info(f"Remote directory not found: {remote_key}")
            return True
        return result.success

    # ── Setup / diagnostics ──

    def ensure_remote_dir(self, remote_key: str = "") -> bool:
        return self._run(["mkdir", self.remote_path(remote_key)]).success

    def test_connection(self) -> bool:
        result = self._run(["lsd", f"{self._provider.remote_name}:", "--max-depth", "1"], timeout=60)
        if not result.success:
            logger.warning(f"Connection test for {self._provider.display_name} failed: {result.stderr.strip()}")
        return result.success

    def is_available(self) -> bool:
        """True if the rclone binary can be found and runs."""
        if shutil.which(self._rclone) is None and not Path(self._rclone).is_file():
            return False
        return self._run(["version"], timeout=30).success
