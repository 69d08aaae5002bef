"""
profile_backup.py
Snapshot the deploy state before it is overwritten, and read snapshots back.

Each backup lives in its own folder under <data dir>/backups/<timestamp>/:
    library.json          the library that produced the superseded manifest
    deploy_manifest.json  the manifest that deploy is about to supersede
    modsettings.lsx       the merged load-order file (if there was one)
    meta.json             {"created": ..., "reason": ..., "game": ...}

Used by the deploy engine (create_backup) and by rollback (list_backups,
load_backup_library).
"""

from __future__ import annotations

import json
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from Utils.errors import NotFoundError
from Utils.library import Library, load_library, save_library

_TIMESTAMP_FMT = "%Y%m%d_%H%M%S"
_MAX_BACKUPS = 10
_BACKUPS_SUBDIR = "backups"
_TIMESTAMP_PATTERN = re.compile(r"^(\d{8}_\d{6})(?:-(\d+))?$")

LIBRARY_FILE     = "library.json"
MANIFEST_FILE    = "deploy_manifest.json"
MODSETTINGS_FILE = "modsettings.lsx"
_META_FILE       = "meta.json"


@dataclass(frozen=True)
class BackupInfo:
    id: str
    created: datetime
    path: Path
    reason: str = ""
    game: str = ""

    @property
    def has_modsettings(self) -> bool:
        return (self.path / MODSETTINGS_FILE).is_file()


def _parse_timestamp_from_dirname(name: str) -> datetime | None:
    """Parse the timestamp from a folder name like '20250225_143022' or '20250225_143022-2'."""
    m = _TIMESTAMP_PATTERN.fullmatch(name)
    if m is None:
        return None
    try:
        return datetime.strptime(m.group(1), _TIMESTAMP_FMT)
    except ValueError:
        return None


def _sort_key(p: Path) -> tuple[str, int]:
    m = _TIMESTAMP_PATTERN.fullmatch(p.name)
    return (m.group(1), int(m.group(2) or 0)) if m else (p.name, 0)


def _backup_dirs(backups_dir: Path) -> list[Path]:
    """Backup folders, oldest first."""
    if not backups_dir.is_dir():
        return []
    subdirs = [
        p for p in backups_dir.iterdir()
        if p.is_dir() and _parse_timestamp_from_dirname(p.name) is not None
    ]
    subdirs.sort(key=_sort_key)
    return subdirs


def create_backup(
    data_dir: Path,
    library: Library,
    files: dict[str, Path | None],
    reason: str = "deploy",
    game_id: str = "",
    log_fn=None,
    prune: bool = True,
) -> BackupInfo:
    """
    Create a new backup folder holding library (as library.json) and copies
    of the given files.

    files maps the name inside the backup (MANIFEST_FILE, MODSETTINGS_FILE)
    to the source path; missing sources are skipped.
    Two backups in the same second get a -1, -2 ... suffix.
    Keeps at most _MAX_BACKUPS folders, deleting the oldest, unless prune
    is False (the caller then runs prune_backups() once the backup is kept).
    """
    _log = log_fn or (lambda _: None)
    backups_dir = data_dir / _BACKUPS_SUBDIR
    backups_dir.mkdir(parents=True, exist_ok=True)
    now = datetime.now()
    base = now.strftime(_TIMESTAMP_FMT)
    name = base
    n = 0
    while (backups_dir / name).exists():
        n += 1
        name = f"{base}-{n}"
    backup_folder = backups_dir / name
    backup_folder.mkdir(parents=True)

    save_library(backup_folder / LIBRARY_FILE, library)
    for dst_name, src in files.items():
        if src is not None and Path(src).is_file():
            shutil.copy2(src, backup_folder / dst_name)
    (backup_folder / _META_FILE).write_text(json.dumps({
        "created": now.isoformat(timespec="seconds"),
        "reason":  reason,
        "game":    game_id,
    }, indent=2), encoding="utf-8")
    _log(f"Backup: {name} ({reason})")
    if prune:
        prune_backups(data_dir, log_fn=log_fn)

    return BackupInfo(id=name, created=now.replace(microsecond=0),
                      path=backup_folder, reason=reason, game=game_id)


def prune_backups(data_dir: Path, log_fn=None) -> None:
    """Delete the oldest backups until at most _MAX_BACKUPS remain."""
    _log = log_fn or (lambda _: None)
    subdirs = _backup_dirs(data_dir / _BACKUPS_SUBDIR)
    while len(subdirs) > _MAX_BACKUPS:
        oldest = subdirs.pop(0)
        try:
            shutil.rmtree(oldest)
            _log(f"Backup: removed oldest {oldest.name}")
        except OSError:
            pass


def _read_info(p: Path) -> BackupInfo:
    reason = game = ""
    created = _parse_timestamp_from_dirname(p.name)
    meta_path = p / _META_FILE
    if meta_path.is_file():
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            reason = str(meta.get("reason", ""))
            game = str(meta.get("game", ""))
            if meta.get("created"):
                created = datetime.fromisoformat(meta["created"])
        except (OSError, ValueError, AttributeError):
            pass
    return BackupInfo(id=p.name, created=created, path=p, reason=reason, game=game)


def list_backups(data_dir: Path) -> list[BackupInfo]:
    """
    List backups, newest first.
    Only folders holding a library.json count as a valid backup.
    """
    dirs = [p for p in _backup_dirs(data_dir / _BACKUPS_SUBDIR) if (p / LIBRARY_FILE).is_file()]
    return [_read_info(p) for p in reversed(dirs)]


def get_backup(data_dir: Path, backup_id: str | None = None) -> BackupInfo:
    """The backup with the given id, or the newest one when backup_id is None."""
    backups = list_backups(data_dir)
    if backup_id is None:
        if not backups:
            raise NotFoundError("backup", "(none)")
        return backups[0]
    for b in backups:
        if b.id == backup_id:
            return b
    raise NotFoundError("backup", backup_id)


def load_backup_library(backup: BackupInfo) -> Library:
    """Read the library snapshot stored in a backup."""
    return load_library(backup.path / LIBRARY_FILE)
