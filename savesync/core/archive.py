"""Archive codec — ZIP archives carrying save data plus a path manifest."""

from __future__ import annotations

import json
import shutil
import zipfile
import zlib
from dataclasses import asdict, dataclass, field
from pathlib import Path

from loguru import logger

from savesync.core.path_resolver import PathContext, is_under, resolve
from savesync.errors import InvalidArchiveError, PathNotFoundError
from savesync.models.backup_record import ArchiveInfo, PathMapping
from savesync.models.save_config import SavePath

# Reserved entry names; a real save file with one of these names at the
# archive root is not supported.
MANIFEST_ENTRY = "__save_paths__.json"
INFO_ENTRY = "backup_info.json"
RESERVED_ENTRIES = frozenset({MANIFEST_ENTRY, INFO_ENTRY})

_CHUNK = 64 * 1024


@dataclass
class ArchiveSummary:
    """Outcome of building an archive."""

    crc: str
    mappings: list[PathMapping]
    file_count: int = 0


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    restored_files: list[str] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def resolve_save_paths(save_paths: list[SavePath], ctx: PathContext | None) -> list[Path]:
    """Resolve every save path and check it exists with the configured kind."""
    resolved: list[Path] = []
    for save_path in save_paths:
        absolute = resolve(save_path.path, ctx)
        if save_path.is_directory and not absolute.is_dir():
            raise PathNotFoundError(str(absolute), True)
        if not save_path.is_directory and not absolute.is_file():
            raise PathNotFoundError(str(absolute), False)
        resolved.append(absolute)
    return resolved


def _unique_entry_names(save_paths: list[SavePath]) -> list[str]:
    names: list[str] = []
    seen: set[str] = set()
    for save_path in save_paths:
        base = save_path.entry_name
        name = base
        n = 2
        while name.lower() in seen or name in RESERVED_ENTRIES:
            name = f"{base}_{n}"
            n += 1
        seen.add(name.lower())
        names.append(name)
    return names


def create_archive(
    save_paths: list[SavePath],
    ctx: PathContext | None,
    zip_path: Path,
) -> ArchiveSummary:
    """
    Write ``save_paths`` into a new archive at ``zip_path``.

    Directories are added recursively under ``<entry_name>/``; files are stored
    as ``<entry_name>``.  The manifest is always appended.  The archive is built
    in a temp file and only moved into place once complete.
    """
    sources = resolve_save_paths(save_paths, ctx)
    entry_names = _unique_entry_names(save_paths)

    zip_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = zip_path.with_name(zip_path.name + ".part")
    mappings: list[PathMapping] = []
    file_count = 0

    try:
        with zipfile.ZipFile(tmp_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for save_path, source, entry_name in zip(save_paths, sources, entry_names):
                if save_path.is_directory:
                    for child in sorted(source.rglob("*")):
                        if child.is_file():
                            rel = child.relative_to(source).as_posix()
                            zf.write(child, f"{entry_name}/{rel}")
                            file_count += 1
                else:
                    zf.write(source, entry_name)
                    file_count += 1
                mappings.append(
                    PathMapping(
                        original_path=save_path.path,
                        is_directory=save_path.is_directory,
                        entry_name=entry_name,
                    )
                )

            zf.writestr(
                MANIFEST_ENTRY,
                json.dumps([asdict(m) for m in mappings], ensure_ascii=False, indent=2),
            )
        crc = compute_crc(tmp_path)
        tmp_path.replace(zip_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.debug(f"Archived {file_count} file(s) into {zip_path.name} (CRC {crc})")
    return ArchiveSummary(crc=crc, mappings=mappings, file_count=file_count)


def compute_crc(zip_path: Path) -> str:
    """
    CRC-32 over the content of every non-reserved entry.

    Entries are visited in case-insensitive name order so the value depends
    only on the captured bytes, not on metadata or write order.
    """
    crc = 0
    try:
        with zipfile.ZipFile(zip_path) as zf:
            entries = sorted(
                (i for i in zf.infolist() if not i.is_dir() and i.filename not in RESERVED_ENTRIES),
                key=lambda i: i.filename.lower(),
            )
            for entry in entries:
                with zf.open(entry) as stream:
                    for chunk in iter(lambda: stream.read(_CHUNK), b""):
                        crc = zlib.crc32(chunk, crc)
    except zipfile.BadZipFile as e:
        raise InvalidArchiveError(f"Corrupt archive {zip_path}: {e}") from e
    return f"{crc & 0xFFFFFFFF:08X}"


def _read_manifest(zf: zipfile.ZipFile) -> list[PathMapping]:
    try:
        raw = zf.read(MANIFEST_ENTRY)
    except KeyError as e:
        raise InvalidArchiveError("Invalid backup file: missing path manifest") from e
    try:
        return [PathMapping(**item) for item in json.loads(raw.decode("utf-8"))]
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
        raise InvalidArchiveError(f"Invalid backup file: unreadable path manifest ({e})") from e


def read_manifest(zip_path: Path) -> list[PathMapping]:
    """Return the path manifest, raising InvalidArchiveError if absent or corrupt."""
    try:
        with zipfile.ZipFile(zip_path) as zf:
            return _read_manifest(zf)
    except zipfile.BadZipFile as e:
        raise InvalidArchiveError(f"Corrupt archive {zip_path}: {e}") from e


def validate_archive(zip_path: Path) -> list[PathMapping]:
    """Check that ``zip_path`` is a readable backup; returns its manifest."""
    if not zip_path.is_file():
        raise InvalidArchiveError(f"Backup file not found: {zip_path}")
    mappings = read_manifest(zip_path)
    if not mappings:
        raise InvalidArchiveError(f"Invalid backup file: empty path manifest in {zip_path.name}")
    return mappings


def read_archive_info(zip_path: Path) -> ArchiveInfo | None:
    """Read the embedded metadata; None if the archive has none or it is unreadable."""
    try:
        with zipfile.ZipFile(zip_path) as zf:
            raw = zf.read(INFO_ENTRY)
        return ArchiveInfo.from_dict(json.loads(raw.decode("utf-8")))
    except KeyError:
        return None
    except (zipfile.BadZipFile, json.JSONDecodeError, UnicodeDecodeError, OSError, TypeError) as e:
        logger.warning(f"Cannot read {INFO_ENTRY} from {zip_path}: {e}")
        return None


def write_archive_info(zip_path: Path, info: ArchiveInfo) -> None:
    """Store ``info`` in the archive, replacing any previous metadata entry."""
    payload = json.dumps(info.to_dict(), ensure_ascii=False, indent=2)

    with zipfile.ZipFile(zip_path) as zf:
        has_info = INFO_ENTRY in zf.namelist()

    if not has_info:
        with zipfile.ZipFile(zip_path, "a", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(INFO_ENTRY, payload)
        return

    # zipfile cannot drop an entry in place, so rebuild without it
    tmp_path = zip_path.with_name(zip_path.name + ".part")
    try:
        with zipfile.ZipFile(zip_path) as src, zipfile.ZipFile(
            tmp_path, "w", zipfile.ZIP_DEFLATED
        ) as dst:
            for item in src.infolist():
                if item.filename == INFO_ENTRY:
                    continue
                copy = zipfile.ZipInfo(item.filename, item.date_time)
                copy.compress_type = item.compress_type
                copy.external_attr = item.external_attr
                with src.open(item) as reader, dst.open(copy, "w") as writer:
                    shutil.copyfileobj(reader, writer, _CHUNK)
            dst.writestr(INFO_ENTRY, payload)
        tmp_path.replace(zip_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _is_excluded(path: Path, excludes: list[Path]) -> bool:
    return any(is_under(path, ex) for ex in excludes)


def _extract(zf: zipfile.ZipFile, entry: zipfile.ZipInfo, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with zf.open(entry) as reader, open(target, "wb") as writer:
        shutil.copyfileobj(reader, writer, _CHUNK)


def restore_archive(
    zip_path: Path,
    ctx: PathContext | None,
    exclude_paths: list[SavePath] | None = None,
) -> RestoreResult:
    """
    Restore an archive to the locations recorded in its manifest.

    Every destination (and exclude path) is resolved before anything on disk
    is touched.  Directory targets are emptied first, except for excluded
    subpaths, then repopulated from the archive.  File targets are overwritten.
    OS errors part-way through propagate to the caller.
    """
    result = RestoreResult()

    try:
        zf = zipfile.ZipFile(zip_path)
    except zipfile.BadZipFile as e:
        raise InvalidArchiveError(f"Corrupt archive {zip_path}: {e}") from e

    with zf:
        mappings = _read_manifest(zf)
        targets = [(m, resolve(m.original_path, ctx)) for m in mappings]
        excludes = [resolve(p.path, ctx) for p in exclude_paths or []]
        entries = [i for i in zf.infolist() if not i.is_dir()]

        for mapping, target in targets:
            if not mapping.is_directory:
                if _is_excluded(target, excludes):
                    logger.info(f"Skipping excluded file during restore: {target}")
                    result.skipped_files.append(str(target))
                    continue
                try:
                    entry = zf.getinfo(mapping.entry_name)
                except KeyError:
                    result.warnings.append(f"Missing in archive: {mapping.entry_name}")
                    continue
                _extract(zf, entry, target)
                result.restored_files.append(str(target))
                continue

            # Directory: clear, then repopulate
            if target.exists():
                for existing in sorted(target.rglob("*"), reverse=True):
                    if existing.is_dir() or _is_excluded(existing, excludes):
                        continue
                    existing.unlink()
            else:
                target.mkdir(parents=True, exist_ok=True)

            prefix = f"{mapping.entry_name}/"
            for entry in entries:
                if not entry.filename.startswith(prefix):
                    continue
                dest = target / entry.filename[len(prefix):]
                if not is_under(dest, target):
                    result.warnings.append(f"Refusing entry outside target: {entry.filename}")
                    continue
                if _is_excluded(dest, excludes):
                    logger.info(f"Skipping excluded path during restore: {dest}")
                    result.skipped_files.append(str(dest))
                    continue
                _extract(zf, entry, dest)
                result.restored_files.append(str(dest))

    logger.info(
        f"Restored {len(result.restored_files)} file(s) from {zip_path.name}, "
        f"{len(result.skipped_files)} skipped"
    )
    return result
