"""CLI smoke tests (cloud sync disabled)."""

from __future__ import annotations

from pathlib import Path

import pytest

from main import main
from savesync.data.catalog import Catalog


@pytest.fixture
def run(tmp_path: Path, game_dir: Path):
    data_dir = tmp_path / "cli-data"

    def _run(*argv: str) -> int:
        return main(["--data-dir", str(data_dir), *argv])

    return _run


class TestCli:
    def test_add_backup_restore(self, run, game_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        install = ["--install-dir", str(game_dir)]
        assert run("add", "game-1", "Test Game", "--dir", str(game_dir / "saves"), *install) == 0
        assert run("backup", "game-1", "--note", "first", *install) == 0

        (game_dir / "saves" / "slot1.sav").write_bytes(b"overwritten")
        assert run("restore", "game-1", *install) == 0
        assert (game_dir / "saves" / "slot1.sav").read_bytes() == b"slot one"

        capsys.readouterr()
        assert run("list", "game-1") == 0
        assert "first" in capsys.readouterr().out

    def test_restore_and_note_by_backup_id(self, run, tmp_path: Path, game_dir: Path) -> None:
        install = ["--install-dir", str(game_dir)]
        run("add", "game-1", "Test Game", "--dir", str(game_dir / "saves"), *install)
        run("backup", "game-1", "--note", "original", *install)
        (game_dir / "saves" / "slot1.sav").write_bytes(b"second")
        run("backup", "game-1", "--note", "later", *install)

        catalog = Catalog(tmp_path / "cli-data")
        catalog.load()
        config = catalog.find_config_by_local_id("game-1")
        first = next(r for r in catalog.backups_for(config.config_id) if r.description == "original")

        assert run("restore", "game-1", "--backup", first.id, *install) == 0
        assert (game_dir / "saves" / "slot1.sav").read_bytes() == b"slot one"

        assert run("note", "game-1", first.id, "keep me") == 0
        catalog.load()
        assert catalog.get_backup(first.id).description == "keep me"

    def test_backup_id_of_another_config_is_rejected(self, run, tmp_path: Path, game_dir: Path) -> None:
        install = ["--install-dir", str(game_dir)]
        run("add", "game-1", "Test Game", "--dir", str(game_dir / "saves"), *install)
        run("backup", "game-1", *install)
        run("add", "game-2", "Other Game", "--dir", str(game_dir / "saves"), *install)

        catalog = Catalog(tmp_path / "cli-data")
        catalog.load()
        config = catalog.find_config_by_local_id("game-1")
        record = catalog.backups_for(config.config_id)[0]
        assert run("restore", "game-2", "--backup", record.id, *install) == 1

    def test_unknown_application(self, run) -> None:
        assert run("backup", "nobody") == 1

    def test_add_links_by_name(self, run, game_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        run("add", "game-1", "Test Game", "--dir", str(game_dir / "saves"), "--install-dir", str(game_dir))
        capsys.readouterr()
        assert run("add", "game-2", "test game") == 0
        assert "Linked 'game-2'" in capsys.readouterr().out

    def test_unlink(self, run, game_dir: Path) -> None:
        run("add", "game-1", "Test Game", "--dir", str(game_dir / "saves"), "--install-dir", str(game_dir))
        assert run("unlink", "game-1") == 0
        assert run("status", "game-1") == 1

    def test_status_without_cloud(self, run, game_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        run("add", "game-1", "Test Game", "--dir", str(game_dir / "saves"), "--install-dir", str(game_dir))
        capsys.readouterr()
        assert run("status", "game-1") == 0
        assert "BothMissing" in capsys.readouterr().out
