"""Portable path resolver — map absolute paths to and from logical templates."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from savesync.errors import UnresolvedVariableError

# Template tokens
GAME_DIR = "{GameDir}"
EMULATOR_DIR = "{EmulatorDir}"
USER_PROFILE = "%USERPROFILE%"

# %VAR%, ${VAR} and $VAR
_ENV_TOKEN = re.compile(r"%([A-Za-z_][A-Za-z0-9_]*)%|\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True)
class PathContext:
    """Host-supplied directories used to expand {GameDir} / {EmulatorDir}."""

    install_dir: str | None = None
    emulator_dir: str | None = None


def _absolute(path: str | Path) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(path))))


def _user_profile() -> str:
    return _absolute(Path.home())


def is_same_drive(path1: str | Path, path2: str | Path) -> bool:
    """True if both paths live on the same drive / UNC share."""
    if not path1 or not path2:
        return False
    drive1 = os.path.splitdrive(_absolute(path1))[0]
    drive2 = os.path.splitdrive(_absolute(path2))[0]
    return os.path.normcase(drive1) == os.path.normcase(drive2)


def is_under(path: str | Path, root: str | Path) -> bool:
    """True if ``path`` equals ``root`` or lies somewhere beneath it."""
    abs_path = os.path.normcase(_absolute(path))
    abs_root = os.path.normcase(_absolute(root))
    try:
        return os.path.commonpath([abs_path, abs_root]) == abs_root
    except ValueError:  # different drives on Windows
        return False


def _relative_template(token: str, path: str, root: str) -> str:
    rel = os.path.relpath(path, root)
    if rel == os.curdir:
        return token
    return f"{token}/{rel.replace(os.sep, '/')}"


def to_logical(
    path: str | Path,
    install_dir: str | None = None,
    emulator_dir: str | None = None,
    prefer_install_relative: bool = True,
) -> str:
    """
    Convert an absolute path to a portable template.

    Preference order: install dir ({GameDir}), emulator dir ({EmulatorDir}),
    user profile (%USERPROFILE%).  Anything else is returned unchanged.
    """
    abs_path = _absolute(path)

    candidates: list[tuple[str, str | None]] = []
    if prefer_install_relative:
        candidates.append((GAME_DIR, install_dir))
    candidates.append((EMULATOR_DIR, emulator_dir))
    candidates.append((USER_PROFILE, _user_profile()))

    for token, root in candidates:
        if not root:
            continue
        abs_root = _absolute(root)
        if not is_same_drive(abs_path, abs_root):
            continue
        if is_under(abs_path, abs_root):
            return _relative_template(token, abs_path, abs_root)

    return abs_path


# Every token to_absolute understands; substituted values are never re-scanned
_TEMPLATE_TOKEN = re.compile(
    re.escape(GAME_DIR) + "|" + re.escape(EMULATOR_DIR) + "|" + re.escape(USER_PROFILE) + "|" + _ENV_TOKEN.pattern
)


def to_absolute(
    logical: str,
    install_dir: str | None = None,
    emulator_dir: str | None = None,
) -> Path:
    """
    Expand a template back to an absolute, normalized path.

    Raises UnresolvedVariableError when a token has no value on this machine;
    callers must not fall back to a guessed location.
    """
    if not logical:
        raise UnresolvedVariableError(logical, "<empty>")

    def replace(match: re.Match[str]) -> str:
        token = match.group(0)
        if token == GAME_DIR:
            if not install_dir:
                raise UnresolvedVariableError(logical, GAME_DIR)
            return install_dir
        if token == EMULATOR_DIR:
            if not emulator_dir:
                raise UnresolvedVariableError(logical, EMULATOR_DIR)
            return emulator_dir
        if token == USER_PROFILE:
            return _user_profile()
        name = match.group(1) or match.group(2) or match.group(3)
        value = os.environ.get(name)
        if value is None:
            raise UnresolvedVariableError(logical, token)
        return value

    return Path(_absolute(_TEMPLATE_TOKEN.sub(replace, logical)))


def resolve(logical: str, ctx: PathContext | None) -> Path:
    """``to_absolute`` with the directories taken from a PathContext."""
    ctx = ctx or PathContext()
    return to_absolute(logical, ctx.install_dir, ctx.emulator_dir)
