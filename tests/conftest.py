"""Shared fixtures: a temp data dir, a catalog, and a small save tree."""

from __future__ import annotations

from pathlib import Path

import pytest

from savesync.config import Config, reset_config
from savesync.core.backup import BackupManager
from savesync.core.path_resolver import PathContext
from savesync.data.catalog import Catalog
from savesync.models.save_config import SaveConfig, SavePath


@pytest.fixture(autouse=True)
def _clean_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(data_dir=tmp_path / "data")


@pytest.fixture
def catalog(config: Config) -> Catalog:
    cat = Catalog(config.data_dir)
    cat.load()
    return cat


@pytest.fixture
def manager(config: Config, catalog: Catalog) -> BackupManager:
    return BackupManager(config, catalog)


@pytest.fixture
def game_dir(tmp_path: Path) -> Path:
    """Install dir with a nested save directory and a loose settings file."""
    root = tmp_path / "game"
    (root / "saves" / "sub").mkdir(parents=True)
    (root / "saves" / "slot1.sav").write_bytes(b"slot one")
    (root / "saves" / "sub" / "slot2.sav").write_bytes(b"slot two")
    (root / "settings.ini").write_text("volume=7\n", encoding="utf-8")
    return root


@pytest.fixture
def ctx(game_dir: Path) -> PathContext:
    return PathContext(install_dir=str(game_dir))


@pytest.fixture
def save_paths() -> list[SavePath]:
    return [
        SavePath("{GameDir}/saves", is_directory=True),
        SavePath("{GameDir}/settings.ini", is_directory=False),
    ]


@pytest.fixture
def save_config(catalog: Catalog, save_paths: list[SavePath]) -> SaveConfig:
    cfg = catalog.get_or_create_config("game-1", "Test Game")
    cfg.save_paths = list(save_paths)
    catalog.save_config(cfg)
    return cfg
