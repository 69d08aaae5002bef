"""
deploy.py
Project the resolved winner map onto the game's target tree.

One deploy() call walks a small state machine:

    IDLE -> STAGING -> LINKING -> MANIFEST_WRITE -> COMMITTED
               |          |             |
               v          v             v
            ABORTED   ROLLED_BACK   ROLLED_BACK

STAGING         compute the wanted output set and diff it against the
                previous manifest (additions / removals / unchanged).  A path
                whose winner or digest changed is a removal plus an addition.
LINKING         remove stale links (only paths recorded in the previous
                manifest), then ask the content cache for a link per
                addition.  A pre-existing unmanaged file at an addition path
                is moved aside to <data dir>/displaced/ and put back when the
                path is removed later.
MANIFEST_WRITE  back up the superseded state, write modsettings.lsx, then
                write deploy_manifest.json (temp file + rename).

Every step taken in LINKING and MANIFEST_WRITE pushes an undo action.  Any
failure or a cancellation replays them in reverse, leaving the target tree
and the previous manifest exactly as they were.

Manifest format (deploy_manifest.json):
    {
      "version": 1,
      "written_at": "2025-02-25T14:30:22",
      "files": {
        "<output key>": {"path": "Data/Public/x.txt", "dest": "/abs/path",
                         "mod_id": "...", "digest": "...", "target": "Data",
                         "displaced": false}
      }
    }

The library that produced the current manifest is kept beside it as
deployed_library.json, so a backup pairs the superseded manifest with the
library that made it and rollback can restore both.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable

from Games.base_game import BaseGame
from Utils.content_cache import CacheEntry, ContentCache, LinkMode
from Utils.errors import (
    DeployCancelled, DeployError, ManifestCorruptError, ModManagerError,
)
from Utils.filemap import Resolution, resolve
from Utils.library import Library, TargetKind, load_library, save_library
from Utils.modsettings import write_text_atomic, write_modsettings, build_modsettings_xml
from Utils.profile_backup import (
    MANIFEST_FILE, MODSETTINGS_FILE, create_backup, get_backup, load_backup_library,
    prune_backups,
)

log = logging.getLogger(__name__)

MANIFEST_VERSION = 1
_DISPLACED_DIR = "displaced"
_DEPLOYED_LIBRARY = "deployed_library.json"


class DeployState(Enum):
    IDLE           = "idle"
    STAGING        = "staging"
    LINKING        = "linking"
    MANIFEST_WRITE = "manifest_write"
    COMMITTED      = "committed"
    ABORTED        = "aborted"
    ROLLED_BACK    = "rolled_back"


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ManifestRecord:
    key: str
    path: str
    dest: Path
    mod_id: str
    digest: str
    target: str
    displaced: bool = False


def _record_to_dict(r: ManifestRecord) -> dict:
    return {
        "path":      r.path,
        "dest":      str(r.dest),
        "mod_id":    r.mod_id,
        "digest":    r.digest,
        "target":    r.target,
        "displaced": r.displaced,
    }


def read_manifest(path: Path) -> dict[str, ManifestRecord]:
    """Read the previous manifest.  Missing file = nothing deployed yet.

    Raises ManifestCorruptError if the file exists but cannot be understood.
    """
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        files = data["files"]
        if not isinstance(files, dict):
            raise ValueError("'files' is not an object")
        return {
            key: ManifestRecord(
                key=key,
                path=str(v["path"]),
                dest=Path(v["dest"]),
                mod_id=str(v["mod_id"]),
                digest=str(v["digest"]),
                target=str(v.get("target", "")),
                displaced=bool(v.get("displaced", False)),
            )
            for key, v in files.items()
        }
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise ManifestCorruptError(path, str(exc)) from exc


def write_manifest(path: Path, records: dict[str, ManifestRecord]) -> None:
    """Write the manifest atomically (temp file + rename)."""
    write_text_atomic(path, json.dumps({
        "version":    MANIFEST_VERSION,
        "written_at": datetime.now().isoformat(timespec="seconds"),
        "files":      {k: _record_to_dict(records[k]) for k in sorted(records)},
    }, indent=2))


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlannedFile:
    key: str
    path: str
    dest: Path
    mod_id: str
    digest: str
    target: str
    size: int = 0


@dataclass
class DeployPlan:
    additions: list[PlannedFile] = field(default_factory=list)
    removals: list[ManifestRecord] = field(default_factory=list)
    unchanged: list[ManifestRecord] = field(default_factory=list)


def _match_existing_case(root: Path, rel: str,
                         cache: dict[Path, dict[str, str]] | None = None) -> Path:
    """Join rel onto root, reusing the on-disk spelling of existing folders.

    Keeps one "Public/" on disk when mods and the game disagree on case.
    cache maps a directory to {lowercase name: real name} of its subfolders
    so repeated lookups in the same directory avoid re-scanning.
    """
    if cache is None:
        cache = {}
    current = root
    parts = rel.split("/")
    for part in parts[:-1]:
        listing = cache.get(current)
        if listing is None:
            try:
                listing = {e.name.lower(): e.name for e in current.iterdir() if e.is_dir()}
            except OSError:
                listing = {}
            cache[current] = listing
        current = current / listing.get(part.lower(), part)
    return current / parts[-1]


def plan_deploy(
    game: BaseGame,
    resolution: Resolution,
    previous: dict[str, ManifestRecord],
    is_live: Callable[[ManifestRecord], bool] | None = None,
) -> DeployPlan:
    """Diff the wanted output set against the previous manifest.

    is_live, when given, lets the caller re-link unchanged paths whose link
    has gone missing from the target tree.
    """
    plan = DeployPlan()
    wanted: dict[str, PlannedFile] = {}
    roots: dict[TargetKind, Path] = {}
    listings: dict[Path, dict[str, str]] = {}
    for key, w in resolution.winners.items():
        label, rel = w.output_path.split("/", 1)
        kind = TargetKind.from_label(label)
        if kind not in roots:
            roots[kind] = game.require_root(kind)
        dest = _match_existing_case(roots[kind], rel, listings)
        wanted[key] = PlannedFile(
            key=key, path=w.output_path, dest=dest, mod_id=w.mod_id,
            digest=w.digest, target=kind.value, size=w.file.size,
        )

    for key in sorted(previous):
        rec = previous[key]
        want = wanted.get(key)
        if want is not None and want.digest == rec.digest and want.mod_id == rec.mod_id \
                and want.dest == rec.dest and (is_live is None or is_live(rec)):
            plan.unchanged.append(rec)
        else:
            plan.removals.append(rec)
    unchanged = {r.key for r in plan.unchanged}
    plan.additions = [wanted[k] for k in sorted(wanted) if k not in unchanged]
    return plan


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class DeployResult:
    state: DeployState
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    displaced: int = 0
    restored: int = 0
    hardlinks: int = 0
    symlinks: int = 0
    modsettings_mods: int | None = None
    backup_id: str | None = None


class _UndoJournal:
    """Undo actions for one deploy attempt, replayed newest first."""

    def __init__(self):
        self._actions: list[tuple[str, Callable[[], None]]] = []

    def push(self, label: str, action: Callable[[], None]) -> None:
        self._actions.append((label, action))

    def replay(self) -> list[str]:
        """Run every undo action.  Returns the labels of the ones that failed."""
        failed: list[str] = []
        while self._actions:
            label, action = self._actions.pop()
            try:
                action()
            except (OSError, ModManagerError) as exc:
                log.error("Undo step failed (%s): %s", label, exc)
                failed.append(label)
        return failed


def _path_under_root(path: Path, root: Path) -> bool:
    """Return True if path resolves to a location under root (no path traversal)."""
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def _prune_empty_dirs(start: Path, stop: Path) -> None:
    """Remove empty directories from start up to (not including) stop."""
    current = start
    while current != stop and _path_under_root(current, stop):
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DeployEngine:
    """Owns the deploy manifest, the displaced-files folder and the backups."""

    def __init__(self, game: BaseGame, cache: ContentCache, data_dir: Path, log_fn=None):
        self.game = game
        self.cache = cache
        self.data_dir = Path(data_dir)
        self._log = log_fn or (lambda _: None)
        self.state = DeployState.IDLE

    @property
    def manifest_path(self) -> Path:
        return self.data_dir / MANIFEST_FILE

    @property
    def displaced_dir(self) -> Path:
        return self.data_dir / _DISPLACED_DIR

    def _set_state(self, state: DeployState) -> None:
        log.debug("deploy: %s -> %s", self.state.value, state.value)
        self.state = state

    def _displaced_path(self, key: str) -> Path:
        return self.displaced_dir / key

    def deployed_library(self) -> Library:
        """The library that produced the current manifest (empty before the first deploy)."""
        return load_library(self.data_dir / _DEPLOYED_LIBRARY)

    def read_manifest(self) -> dict[str, ManifestRecord]:
        return read_manifest(self.manifest_path)

    # -- linking steps ------------------------------------------------------

    def _remove(self, rec: ManifestRecord, journal: _UndoJournal, result: DeployResult) -> None:
        dest = rec.dest
        digest = self.cache.linked_digest(dest)
        if digest is not None:
            self.cache.unlink(dest)
            entry = self.cache.get(digest) or CacheEntry(digest, 0, self.cache.object_path(digest))
            journal.push(f"relink {rec.path}", lambda: self.cache.link(entry, dest))
            result.removed += 1
        elif dest.exists() or dest.is_symlink():
            log.warning("Leaving %s alone: it no longer links into the cache", dest)
            self._log(f"  Skipped {rec.path}: replaced outside the manager.")
            self.cache.forget_link(dest)
            return

        if rec.displaced:
            stash = self._displaced_path(rec.key)
            if stash.is_file() and not dest.exists():
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(stash), str(dest))

                def _redisplace() -> None:
                    stash.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(dest), str(stash))
                journal.push(f"re-displace {rec.path}", _redisplace)
                result.restored += 1

    def _add(self, item: PlannedFile, journal: _UndoJournal, result: DeployResult) -> ManifestRecord:
        dest = item.dest
        displaced = False
        if dest.exists() or dest.is_symlink():
            old_digest = self.cache.linked_digest(dest)
            if old_digest is not None:
                # Our own link left over from a lost manifest: replace it.
                self.cache.unlink(dest)
                old = self.cache.get(old_digest) or \
                    CacheEntry(old_digest, 0, self.cache.object_path(old_digest))
                journal.push(f"relink {item.path}", lambda: self.cache.link(old, dest))
            elif dest.is_dir() and not dest.is_symlink():
                raise IsADirectoryError(f"A directory is in the way of {item.path}: {dest}")
            else:
                stash = self._displaced_path(item.key)
                stash.parent.mkdir(parents=True, exist_ok=True)
                if stash.exists():
                    stash.unlink()
                shutil.move(str(dest), str(stash))
                journal.push(f"restore {item.path}",
                             lambda: shutil.move(str(stash), str(dest)))
                displaced = True
                result.displaced += 1
                self._log(f"  Moved aside existing {item.path}")

        entry = self.cache.get(item.digest) or \
            CacheEntry(item.digest, item.size, self.cache.object_path(item.digest))
        link = self.cache.link(entry, dest)
        journal.push(f"unlink {item.path}", lambda: self.cache.unlink(dest))
        if link.mode is LinkMode.HARDLINK:
            result.hardlinks += 1
        else:
            result.symlinks += 1
        result.added += 1
        return ManifestRecord(
            key=item.key, path=item.path, dest=dest, mod_id=item.mod_id,
            digest=item.digest, target=item.target, displaced=displaced,
        )

    # -- the state machine --------------------------------------------------

    def deploy(
        self,
        library: Library,
        resolution: Resolution | None = None,
        cancel_event=None,
        full_redeploy: bool = False,
        make_backup: bool = True,
        reason: str = "deploy",
        modsettings_text: str | None = None,
    ) -> DeployResult:
        """Bring the target tree in line with library.

        full_redeploy ignores the previous manifest (use it when the manifest
        is corrupt): paths that already link into this cache are replaced,
        everything else in the way is displaced, and links the cache itself
        recorded but the new state does not want are removed.

        modsettings_text, when given, is written verbatim instead of being
        generated from library (rollback restores the backed-up file).
        """
        self._set_state(DeployState.IDLE)
        result = DeployResult(state=self.state)
        resolution = resolution if resolution is not None else resolve(library)

        # -- Staging --------------------------------------------------------
        self._set_state(DeployState.STAGING)
        try:
            previous = self._previous_for(full_redeploy)
            plan = plan_deploy(
                self.game, resolution, previous,
                is_live=lambda r: self.cache.is_linked(r.dest, r.digest),
            )
            if full_redeploy:
                wanted = {a.dest for a in plan.additions}
                plan.removals = [r for r in plan.removals if r.dest not in wanted]
            if cancel_event is not None and cancel_event.is_set():
                raise DeployCancelled("Deploy cancelled before linking")
        except DeployCancelled:
            self._set_state(DeployState.ABORTED)
            result.state = self.state
            raise
        except ManifestCorruptError:
            self._set_state(DeployState.ABORTED)
            raise
        except (OSError, ValueError, ModManagerError) as exc:
            self._set_state(DeployState.ABORTED)
            raise DeployError("staging", self.state.value, exc) from exc

        self._log(f"Deploying: {len(plan.additions)} to link, {len(plan.removals)} to remove, "
                  f"{len(plan.unchanged)} unchanged.")
        new_records: dict[str, ManifestRecord] = {r.key: r for r in plan.unchanged}
        journal = _UndoJournal()

        # -- Linking --------------------------------------------------------
        self._set_state(DeployState.LINKING)
        try:
            for rec in plan.removals:
                self._check_cancel(cancel_event)
                self._remove(rec, journal, result)
            for item in plan.additions:
                self._check_cancel(cancel_event)
                rec = self._add(item, journal, result)
                new_records[rec.key] = rec
        except BaseException as exc:
            self._rollback_attempt(journal, "linking", exc)

        # -- Manifest write -------------------------------------------------
        self._set_state(DeployState.MANIFEST_WRITE)
        try:
            self._check_cancel(cancel_event)
            if make_backup:
                backup = self._backup(reason)
                result.backup_id = backup.id
                journal.push("remove backup " + backup.id,
                             lambda: shutil.rmtree(backup.path, ignore_errors=True))
            ms_path = self.game.modsettings_path()
            if ms_path is not None:
                ms_before = ms_path.read_bytes() if ms_path.is_file() else None
                journal.push("restore modsettings.lsx",
                             lambda: _restore_bytes(ms_path, ms_before))
                if modsettings_text is None:
                    result.modsettings_mods = write_modsettings(ms_path, library, self._log)
                else:
                    write_text_atomic(ms_path, modsettings_text)
            deployed_lib = self.data_dir / _DEPLOYED_LIBRARY
            lib_before = deployed_lib.read_bytes() if deployed_lib.is_file() else None
            journal.push("restore deployed_library.json",
                         lambda: _restore_bytes(deployed_lib, lib_before))
            save_library(deployed_lib, library)
            write_manifest(self.manifest_path, new_records)
        except BaseException as exc:
            self._rollback_attempt(journal, "manifest_write", exc)

        # -- Committed ------------------------------------------------------
        self._set_state(DeployState.COMMITTED)
        self.cache.save()
        if result.backup_id:
            prune_backups(self.data_dir, log_fn=self._log)
        for rec in plan.removals:
            if rec.key not in new_records or new_records[rec.key].dest != rec.dest:
                root = self.game.target_root(TargetKind.from_label(rec.target)) \
                    if rec.target else None
                if root is not None:
                    _prune_empty_dirs(rec.dest.parent, root)
        result.state = self.state
        result.unchanged = len(plan.unchanged)
        self._log(f"Deploy complete: {result.added} linked "
                  f"({result.hardlinks} hardlink(s), {result.symlinks} symlink(s)), "
                  f"{result.removed} removed, {result.displaced} displaced.")
        return result

    def _previous_for(self, full_redeploy: bool) -> dict[str, ManifestRecord]:
        if not full_redeploy:
            return self.read_manifest()
        # The manifest is not trusted: fall back to the links the cache
        # recorded itself.  Nothing else in the target tree is touched.
        out: dict[str, ManifestRecord] = {}
        for path, digest in sorted(self.cache.links().items()):
            dest = Path(path)
            if not self.cache.is_linked(dest, digest):
                continue
            key = f"__cache__/{path}"
            out[key] = ManifestRecord(key=key, path=path, dest=dest, mod_id="",
                                      digest=digest, target="")
        return out

    def _check_cancel(self, cancel_event) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise DeployCancelled("Deploy cancelled")

    def _rollback_attempt(self, journal: _UndoJournal, stage: str, exc: BaseException) -> None:
        failed = journal.replay()
        self.cache.save()
        self._set_state(DeployState.ROLLED_BACK)
        if failed:
            log.error("Rollback left %d step(s) undone: %s", len(failed), ", ".join(failed))
        if isinstance(exc, DeployCancelled):
            self._log("Deploy cancelled; target tree restored.")
            raise exc
        self._log(f"Deploy failed during {stage}; target tree restored.")
        if isinstance(exc, (KeyboardInterrupt, SystemExit)):
            raise exc
        raise DeployError(stage, self.state.value, exc) from exc

    def _backup(self, reason: str):
        return create_backup(
            self.data_dir,
            self.deployed_library(),
            {
                MANIFEST_FILE:    self.manifest_path,
                MODSETTINGS_FILE: self.game.modsettings_path(),
            },
            reason=reason,
            game_id=self.game.game_id,
            log_fn=self._log,
            prune=False,
        )

    # -- rollback / purge ---------------------------------------------------

    def rollback(self, backup_id: str | None = None, cancel_event=None) -> Library:
        """Return the target tree to the state stored in a backup.

        Returns the restored library; the caller installs it in the store.
        No new backup is taken.
        """
        backup = get_backup(self.data_dir, backup_id)
        library = load_backup_library(backup)
        ms_text = None
        if backup.has_modsettings:
            ms_text = (backup.path / MODSETTINGS_FILE).read_text(encoding="utf-8")
        self._log(f"Rolling back to backup {backup.id} ({backup.reason or 'deploy'}).")
        self.deploy(library, resolve(library), cancel_event=cancel_event,
                    make_backup=False, reason="rollback", modsettings_text=ms_text)
        return library

    def purge(self, cancel_event=None) -> DeployResult:
        """Remove everything the manifest records and reset modsettings.lsx."""
        self._log("Purging all deployed files.")
        return self.deploy(Library(), Resolution(), cancel_event=cancel_event,
                           reason="purge", modsettings_text=build_modsettings_xml([]))


def _restore_bytes(path: Path, data: bytes | None) -> None:
    if data is None:
        path.unlink(missing_ok=True)
        return
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)
