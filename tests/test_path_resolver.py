"""Tests for the portable path resolver."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from savesync.core.path_resolver import (
    EMULATOR_DIR,
    GAME_DIR,
    USER_PROFILE,
    PathContext,
    is_same_drive,
    is_under,
    resolve,
    to_absolute,
    to_logical,
)
from savesync.errors import UnresolvedVariableError


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home


class TestToLogical:
    def test_install_relative(self, tmp_path: Path, home: Path) -> None:
        install = tmp_path / "game"
        logical = to_logical(install / "saves" / "a.sav", str(install))
        assert logical == f"{GAME_DIR}/saves/a.sav"

    def test_install_dir_itself(self, tmp_path: Path, home: Path) -> None:
        install = tmp_path / "game"
        assert to_logical(install, str(install)) == GAME_DIR

    def test_emulator_relative_when_install_not_preferred(self, tmp_path: Path, home: Path) -> None:
        emu = tmp_path / "emu"
        path = emu / "saves" / "x.srm"
        logical = to_logical(path, str(emu), str(emu), prefer_install_relative=False)
        assert logical == f"{EMULATOR_DIR}/saves/x.srm"

    def test_user_profile_relative(self, home: Path) -> None:
        logical = to_logical(home / "Documents" / "save.dat")
        assert logical == f"{USER_PROFILE}/Documents/save.dat"

    def test_outside_every_root_is_unchanged(self, tmp_path: Path, home: Path) -> None:
        path = tmp_path / "elsewhere" / "file.sav"
        assert to_logical(path, str(tmp_path / "game")) == os.path.normpath(str(path))

    def test_sibling_with_common_prefix_is_not_inside(self, tmp_path: Path, home: Path) -> None:
        install = tmp_path / "game"
        path = tmp_path / "game2" / "file.sav"
        assert not to_logical(path, str(install)).startswith(GAME_DIR)


class TestToAbsolute:
    def test_game_dir_substitution(self, tmp_path: Path) -> None:
        result = to_absolute(f"{GAME_DIR}/saves/a.sav", str(tmp_path))
        assert result == tmp_path / "saves" / "a.sav"

    def test_missing_install_dir_raises(self) -> None:
        with pytest.raises(UnresolvedVariableError) as exc:
            to_absolute(f"{GAME_DIR}/saves")
        assert exc.value.variable == GAME_DIR

    def test_missing_emulator_dir_raises(self) -> None:
        with pytest.raises(UnresolvedVariableError):
            to_absolute(f"{EMULATOR_DIR}/saves", install_dir="/games/x")

    def test_empty_template_raises(self) -> None:
        with pytest.raises(UnresolvedVariableError):
            to_absolute("")

    def test_parent_segments_are_collapsed(self, tmp_path: Path) -> None:
        result = to_absolute(f"{GAME_DIR}/a/../b/file", str(tmp_path))
        assert result == tmp_path / "b" / "file"

    @pytest.mark.parametrize("template", ["%SAVES_ROOT%/x.sav", "$SAVES_ROOT/x.sav", "${SAVES_ROOT}/x.sav"])
    def test_environment_tokens(self, template: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SAVES_ROOT", str(tmp_path))
        assert to_absolute(template) == tmp_path / "x.sav"

    def test_unset_environment_variable_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SAVESYNC_NOT_SET", raising=False)
        with pytest.raises(UnresolvedVariableError):
            to_absolute("%SAVESYNC_NOT_SET%/file")

    def test_substituted_values_are_not_expanded_again(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        install = tmp_path / "My$Games%Saves%"
        monkeypatch.delenv("Games", raising=False)
        monkeypatch.delenv("Saves", raising=False)
        assert to_absolute(f"{GAME_DIR}/s", str(install)) == install / "s"

    def test_environment_value_with_token_text(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SAVES_ROOT", str(tmp_path / "{GameDir}"))
        assert to_absolute("$SAVES_ROOT/x.sav") == tmp_path / "{GameDir}" / "x.sav"

    def test_round_trip(self, tmp_path: Path, home: Path) -> None:
        install = tmp_path / "game"
        original = install / "data" / "profile" / "save.bin"
        assert to_absolute(to_logical(original, str(install)), str(install)) == original

    def test_resolve_uses_context(self, tmp_path: Path) -> None:
        ctx = PathContext(install_dir=str(tmp_path))
        assert resolve(f"{GAME_DIR}/s", ctx) == tmp_path / "s"
        with pytest.raises(UnresolvedVariableError):
            resolve(f"{GAME_DIR}/s", None)


class TestHelpers:
    def test_same_drive_on_posix_paths(self, tmp_path: Path) -> None:
        assert is_same_drive(tmp_path / "a", tmp_path / "b")

    def test_same_drive_empty(self) -> None:
        assert not is_same_drive("", "/tmp")

    def test_is_under(self, tmp_path: Path) -> None:
        assert is_under(tmp_path / "a" / "b", tmp_path / "a")
        assert is_under(tmp_path / "a", tmp_path / "a")
        assert not is_under(tmp_path / "ab", tmp_path / "a")
