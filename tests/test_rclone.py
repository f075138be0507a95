"""Tests for the rclone transport (subprocess is mocked)."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from savesync.core.rclone import MAX_RETRIES, RcloneService, RemoteExists, backup_key
from savesync.models.cloud_provider import CloudProvider


def _proc(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def service() -> RcloneService:
    return RcloneService(provider=CloudProvider.GOOGLE_DRIVE, remote_root="SaveSync", retry_delay=0)


@pytest.fixture
def run():
    with patch("savesync.core.rclone.subprocess.run") as mock_run:
        yield mock_run


class TestPaths:
    def test_remote_base(self, service: RcloneService) -> None:
        assert service.remote_base == "gdrive:SaveSync"
        assert service.remote_path("catalog.json") == "gdrive:SaveSync/catalog.json"

    def test_bucket_only_for_bucket_providers(self) -> None:
        r2 = RcloneService(provider=CloudProvider.CLOUDFLARE_R2, remote_root="/SaveSync/", bucket="saves")
        assert r2.remote_base == "cloudflare-r2:saves/SaveSync"
        drive = RcloneService(provider=CloudProvider.GOOGLE_DRIVE, bucket="ignored")
        assert drive.remote_base == "gdrive:SaveSync"

    def test_backup_key(self) -> None:
        assert backup_key("abc") == "Backups/abc"
        assert backup_key("abc", "Latest.zip") == "Backups/abc/Latest.zip"

    def test_config_flag_is_passed(self, run, tmp_path: Path) -> None:
        run.return_value = _proc()
        svc = RcloneService(config_path=tmp_path / "rclone.conf", retry_delay=0)
        svc.delete("x")
        cmd = run.call_args.args[0]
        assert cmd[-2:] == ["--config", str(tmp_path / "rclone.conf")]


class TestRetry:
    def test_transient_failure_is_retried(self, service: RcloneService, run, tmp_path: Path) -> None:
        src = tmp_path / "a.zip"
        src.write_bytes(b"x")
        run.side_effect = [_proc(1, stderr="connection reset"), _proc(0)]
        assert service.upload(src, "Backups/c/a.zip")
        assert run.call_count == 2
        assert run.call_args.args[0][:3] == ["rclone", "copyto", str(src)]

    def test_gives_up_after_max_retries(self, service: RcloneService, run, tmp_path: Path) -> None:
        run.return_value = _proc(1, stderr="server error")
        assert not service.download("Backups/c/a.zip", tmp_path / "out.zip")
        assert run.call_count == MAX_RETRIES

    def test_not_found_is_not_retried(self, service: RcloneService, run, tmp_path: Path) -> None:
        run.return_value = _proc(3, stderr="ERROR : directory not found")
        assert not service.download("Backups/c/a.zip", tmp_path / "out.zip")
        assert run.call_count == 1

    def test_timeout(self, service: RcloneService, run) -> None:
        run.side_effect = subprocess.TimeoutExpired(cmd="rclone", timeout=1)
        assert service.exists("catalog.json") is RemoteExists.UNKNOWN

    def test_missing_binary(self, service: RcloneService, run) -> None:
        run.side_effect = FileNotFoundError("rclone")
        assert not service.delete("x")


class TestOperations:
    def test_upload_missing_local_file(self, service: RcloneService, run, tmp_path: Path) -> None:
        assert not service.upload(tmp_path / "nope.zip", "k")
        run.assert_not_called()

    def test_delete_missing_counts_as_success(self, service: RcloneService, run) -> None:
        run.return_value = _proc(4, stderr="object not found")
        assert service.delete("Backups/c/gone.zip")
        assert run.call_count == 1

    @pytest.mark.parametrize(
        "proc, expected",
        [
            (_proc(0, stdout="catalog.json\n"), RemoteExists.TRUE),
            (_proc(0, stdout=""), RemoteExists.FALSE),
            (_proc(3, stderr="directory not found"), RemoteExists.FALSE),
            (_proc(1, stderr="auth failed"), RemoteExists.UNKNOWN),
        ],
    )
    def test_exists(self, service: RcloneService, run, proc, expected) -> None:
        run.return_value = proc
        assert service.exists("catalog.json") is expected

    def test_list_files(self, service: RcloneService, run) -> None:
        run.return_value = _proc(0, stdout='[{"Path": "a/Latest.zip"}, {"Path": "b/x.zip"}]')
        assert service.list_files("Backups") == ["a/Latest.zip", "b/x.zip"]
        assert "--recursive" in run.call_args.args[0]

    def test_list_files_failure(self, service: RcloneService, run) -> None:
        run.return_value = _proc(1, stderr="boom")
        assert service.list_files() is None

    def test_dir_copy_exclude(self, service: RcloneService, run, tmp_path: Path) -> None:
        run.return_value = _proc(0)
        assert service.download_dir("Backups/c", tmp_path / "c", exclude="Latest.zip")
        cmd = run.call_args.args[0]
        assert cmd[1] == "copy"
        assert cmd[-2:] == ["--exclude", "Latest.zip"]

    def test_download_dir_missing_remote(self, service: RcloneService, run, tmp_path: Path) -> None:
        run.return_value = _proc(3, stderr="directory not found")
        assert service.download_dir("Backups/c", tmp_path / "c")

    def test_is_available_without_binary(self, run) -> None:
        with patch("savesync.core.rclone.shutil.which", return_value=None):
            svc = RcloneService(rclone_path="/no/such/rclone")
            assert not svc.is_available()
        run.assert_not_called()
