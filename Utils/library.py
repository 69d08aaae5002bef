"""
library.py
The mod library: every imported mod, its files, and the stack order.

The library is an ordered list of entries.  Index 0 is the bottom of the
stack (lowest priority); the last entry wins file conflicts by default.
Positions are always the list index, so they stay dense and gap-free no
matter how entries are added, removed or moved.

Entries are either a ModEntry (a real mod) or a GhostEntry (a placeholder
holding the slot of a mod that is referenced but not installed).  Ghosts are
never enabled or deployed, and are replaced in place when the real mod is
added.

Persisted as library.json:
    {
      "version": 1,
      "entries": [ {mod...}, {"ghost": true, "id": ..., "name": ...}, ... ],
      "overrides": { "<output path key>": "<mod id>" }
    }

LibraryStore is the only writer.  Every mutation is applied to a copy,
written with write-temp-then-rename, and only then swapped in, so a failed
write leaves both the file and the in-memory library at the prior state.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, ClassVar, Union

from Utils.errors import ConfirmationRequired, LibraryCorruptError, NotFoundError

log = logging.getLogger(__name__)

LIBRARY_VERSION = 1


# ---------------------------------------------------------------------------
# Output paths
# ---------------------------------------------------------------------------

class TargetKind(Enum):
    """Target subtree a file deploys into.  The value doubles as the path label."""
    PAK       = "Pak"
    GENERATED = "Generated"
    DATA      = "Data"
    BIN       = "Bin"

    @classmethod
    def from_label(cls, label: str) -> TargetKind:
        lower = label.strip().lower()
        for kind in cls:
            if kind.value.lower() == lower:
                return kind
        raise ValueError(f"Unknown target subtree: {label!r}")


def normalize_rel_path(rel: str) -> str:
    """Forward slashes, no leading slash, no empty or '.' segments."""
    parts = [p for p in rel.replace("\\", "/").split("/") if p and p != "."]
    if any(p == ".." for p in parts):
        raise ValueError(f"Path escapes its target subtree: {rel!r}")
    return "/".join(parts)


def output_key(output_path: str) -> str:
    """Case-insensitive lookup key for an output path like 'Data/x.txt'."""
    norm = normalize_rel_path(output_path)
    if "/" not in norm:
        raise ValueError(f"Output path needs a target prefix: {output_path!r}")
    label, rest = norm.split("/", 1)
    return f"{TargetKind.from_label(label).value}/{rest}".lower()


@dataclass(frozen=True)
class FileEntry:
    """One file a mod ships: where it goes, how big it is, and its cache digest."""
    target: TargetKind
    rel_path: str
    size: int
    digest: str

    @property
    def output_path(self) -> str:
        return f"{self.target.value}/{self.rel_path}"

    @property
    def key(self) -> str:
        return self.output_path.lower()


# ---------------------------------------------------------------------------
# Mod origin (closed variant)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ManualOrigin:
    """Imported by the user from an archive, folder or .pak."""
    kind: ClassVar[str] = "manual"


@dataclass(frozen=True)
class NativeOrigin:
    """Found in the game's own Mods folder; external_id is the pak filename."""
    external_id: str
    kind: ClassVar[str] = "native"


Origin = Union[ManualOrigin, NativeOrigin]


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

@dataclass
class PakInfo:
    """Module metadata read from a pak's meta.lsx (or a sidecar info.json)."""
    uuid: str
    name: str
    folder: str = ""
    version64: str = "36028797018963968"
    md5: str = ""
    publish_handle: str = "0"
    author: str = ""
    description: str = ""


@dataclass
class ModEntry:
    id: str
    name: str
    files: list[FileEntry] = field(default_factory=list)
    enabled: bool = True
    origin: Origin = field(default_factory=ManualOrigin)
    dependencies: list[str] = field(default_factory=list)
    created_at: int | None = None
    added_at: int = field(default_factory=lambda: int(time.time()))
    source_label: str = ""
    pak_info: PakInfo | None = None
    # Set by a manual reorder; the ranking engine never moves a pinned mod.
    rank_pinned: bool = False

    is_ghost: ClassVar[bool] = False

    @property
    def total_bytes(self) -> int:
        return sum(f.size for f in self.files)

    @property
    def is_native(self) -> bool:
        return isinstance(self.origin, NativeOrigin)

    def claims(self, key: str) -> bool:
        return any(f.key == key for f in self.files)


@dataclass
class GhostEntry:
    """Placeholder for a mod that is referenced but not installed."""
    id: str
    name: str = ""

    is_ghost: ClassVar[bool] = True
    enabled: ClassVar[bool] = False
    rank_pinned: ClassVar[bool] = False
    files: ClassVar[tuple] = ()
    dependencies: ClassVar[tuple] = ()

    @property
    def display_name(self) -> str:
        return self.name or self.id


LibraryEntry = Union[ModEntry, GhostEntry]


@dataclass
class Library:
    entries: list[LibraryEntry] = field(default_factory=list)
    # output key -> mod id that must win that path
    overrides: dict[str, str] = field(default_factory=dict)
    version: int = LIBRARY_VERSION

    def get(self, mod_id: str) -> LibraryEntry | None:
        for e in self.entries:
            if e.id == mod_id:
                return e
        return None

    def require(self, mod_id: str) -> LibraryEntry:
        entry = self.get(mod_id)
        if entry is None:
            raise NotFoundError("mod", mod_id)
        return entry

    def position(self, mod_id: str) -> int:
        for i, e in enumerate(self.entries):
            if e.id == mod_id:
                return i
        raise NotFoundError("mod", mod_id)

    def mods(self) -> list[ModEntry]:
        return [e for e in self.entries if not e.is_ghost]

    def enabled_mods(self) -> list[ModEntry]:
        """Enabled real mods in stack order (bottom first)."""
        return [e for e in self.entries if not e.is_ghost and e.enabled]

    def dependents_of(self, mod_id: str, enabled_only: bool = True) -> list[str]:
        """Ids of mods that declare mod_id as a dependency, in stack order."""
        out: list[str] = []
        low = mod_id.lower()
        for e in self.mods():
            if e.id == mod_id or (enabled_only and not e.enabled):
                continue
            if any(d.lower() == low for d in e.dependencies):
                out.append(e.id)
        return out


# ---------------------------------------------------------------------------
# Label helpers
# ---------------------------------------------------------------------------

def clean_source_label(label: str) -> str:
    """Strip Nexus-style trailing version/upload-id segments from a label.

    "Cool Mod-1234-1-2-1700000000" -> "Cool Mod"
    "Better_Camp_Clothes-5678-2-0" -> "Better Camp Clothes"
    A single short trailing number ("Mod-2") is kept, it is usually part of
    the name.
    """
    raw = label.strip().replace("_", " ")
    if not raw:
        return ""
    joiner = " - " if " - " in raw else "-"
    parts = raw.split("-")
    idx = len(parts)
    numeric: list[str] = []
    while idx > 0:
        seg = parts[idx - 1].strip()
        if not seg:
            idx -= 1
            continue
        if seg.isdigit():
            numeric.append(seg)
            idx -= 1
        else:
            break
    if numeric and not (len(numeric[0]) >= 6 or len(numeric) >= 2):
        idx = len(parts)
    kept = [p.strip() for p in parts[:idx] if p.strip()]
    return " ".join(joiner.join(kept).split())


# ---------------------------------------------------------------------------
# (De)serialization
# ---------------------------------------------------------------------------

def _file_to_dict(f: FileEntry) -> dict:
    return {"target": f.target.value, "path": f.rel_path, "size": f.size, "digest": f.digest}


def _file_from_dict(d: dict) -> FileEntry:
    return FileEntry(
        target=TargetKind.from_label(d["target"]),
        rel_path=normalize_rel_path(d["path"]),
        size=int(d.get("size", 0)),
        digest=str(d.get("digest", "")),
    )


def _origin_to_dict(origin: Origin) -> dict:
    if isinstance(origin, NativeOrigin):
        return {"kind": "native", "external_id": origin.external_id}
    return {"kind": "manual"}


def _origin_from_dict(d: dict | None) -> Origin:
    if d and d.get("kind") == "native":
        return NativeOrigin(external_id=str(d.get("external_id", "")))
    return ManualOrigin()


def entry_to_dict(e: LibraryEntry) -> dict:
    if e.is_ghost:
        return {"ghost": True, "id": e.id, "name": e.name}
    d = {
        "id":           e.id,
        "name":         e.name,
        "enabled":      e.enabled,
        "origin":       _origin_to_dict(e.origin),
        "dependencies": list(e.dependencies),
        "created_at":   e.created_at,
        "added_at":     e.added_at,
        "source_label": e.source_label,
        "rank_pinned":  e.rank_pinned,
        "files":        [_file_to_dict(f) for f in e.files],
    }
    if e.pak_info is not None:
        d["pak_info"] = dict(vars(e.pak_info))
    return d


def entry_from_dict(d: dict) -> LibraryEntry:
    if d.get("ghost"):
        return GhostEntry(id=str(d["id"]), name=str(d.get("name", "")))
    pak = d.get("pak_info")
    return ModEntry(
        id=str(d["id"]),
        name=str(d.get("name") or d["id"]),
        files=[_file_from_dict(f) for f in d.get("files", [])],
        enabled=bool(d.get("enabled", True)),
        origin=_origin_from_dict(d.get("origin")),
        dependencies=[str(x) for x in d.get("dependencies", [])],
        created_at=d.get("created_at"),
        added_at=int(d.get("added_at") or 0),
        source_label=str(d.get("source_label", "")),
        pak_info=PakInfo(**pak) if isinstance(pak, dict) else None,
        rank_pinned=bool(d.get("rank_pinned", False)),
    )


def library_to_dict(lib: Library) -> dict:
    return {
        "version":   lib.version,
        "entries":   [entry_to_dict(e) for e in lib.entries],
        "overrides": dict(sorted(lib.overrides.items())),
    }


def library_from_dict(data: dict) -> Library:
    entries: list[LibraryEntry] = []
    seen: set[str] = set()
    for raw in data.get("entries", []):
        entry = entry_from_dict(raw)
        if entry.id in seen:
            log.warning("Duplicate library entry %s dropped", entry.id)
            continue
        seen.add(entry.id)
        entries.append(entry)
    overrides = {
        str(k).lower(): str(v)
        for k, v in (data.get("overrides") or {}).items()
    }
    return Library(entries=entries, overrides=overrides,
                   version=int(data.get("version", LIBRARY_VERSION)))


def load_library(path: Path) -> Library:
    """Read library.json.  A missing file is an empty library; a broken one raises."""
    if not path.is_file():
        return Library()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("top level is not an object")
        return library_from_dict(data)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise LibraryCorruptError(f"Cannot read {path}: {exc}") from exc


def save_library(path: Path, lib: Library) -> None:
    """Write library.json atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    try:
        tmp.write_text(json.dumps(library_to_dict(lib), indent=2), encoding="utf-8")
        tmp.replace(path)
    except OSError:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Store: the single writer
# ---------------------------------------------------------------------------

class LibraryStore:
    """Owns the Library and library.json.  Readers get snapshots."""

    def __init__(self, path: Path, log_fn=None):
        self._path = Path(path)
        self._log = log_fn or (lambda _: None)
        self._library = load_library(self._path)
        # Called with each removed ModEntry when remove(delete_payload=True).
        self.payload_hook: Callable[[ModEntry], None] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def snapshot(self) -> Library:
        return copy.deepcopy(self._library)

    def _mutate(self, fn: Callable[[Library], object]):
        draft = copy.deepcopy(self._library)
        result = fn(draft)
        save_library(self._path, draft)
        self._library = draft
        return result

    # -- add / remove -------------------------------------------------------

    def add(self, entry: ModEntry) -> int:
        """Add a mod and return its position.

        New ids go on top of the stack.  A ghost with the same id is replaced
        in place; an existing mod with the same id is updated in place and
        keeps its enabled flag and rank pin.
        """
        def _apply(lib: Library) -> int:
            for i, existing in enumerate(lib.entries):
                if existing.id != entry.id:
                    continue
                new = copy.deepcopy(entry)
                if not existing.is_ghost:
                    new.enabled = existing.enabled
                    new.rank_pinned = existing.rank_pinned
                    new.added_at = existing.added_at
                    self._log(f"Updated {new.name} in place at position {i}.")
                else:
                    self._log(f"{new.name} replaces its placeholder at position {i}.")
                lib.entries[i] = new
                _drop_dead_overrides(lib)
                return i
            lib.entries.append(copy.deepcopy(entry))
            return len(lib.entries) - 1
        return self._mutate(_apply)

    def add_ghost(self, mod_id: str, name: str = "", position: int | None = None) -> int:
        """Insert a placeholder for a missing mod.  No-op if the id exists."""
        def _apply(lib: Library) -> int:
            existing = lib.get(mod_id)
            if existing is not None:
                return lib.position(mod_id)
            pos = len(lib.entries) if position is None else _clamp(position, len(lib.entries))
            lib.entries.insert(pos, GhostEntry(id=mod_id, name=name))
            return pos
        return self._mutate(_apply)

    def remove(self, mod_id: str, delete_payload: bool = False,
               confirmed: bool = False, leave_ghost: bool = False) -> LibraryEntry:
        """Remove an entry.

        Raises ConfirmationRequired when enabled mods declare it as a
        dependency and confirmed is False.  Override pins naming the mod are
        dropped, so those paths fall back to their default winner.
        """
        current = self._library.require(mod_id)
        dependents = self._library.dependents_of(mod_id)
        if dependents and not confirmed:
            raise ConfirmationRequired("remove", mod_id, affected=dependents)

        def _apply(lib: Library) -> LibraryEntry:
            i = lib.position(mod_id)
            removed = lib.entries.pop(i)
            if leave_ghost and not removed.is_ghost:
                lib.entries.insert(i, GhostEntry(id=removed.id, name=removed.name))
            for key in [k for k, v in lib.overrides.items() if v == mod_id]:
                del lib.overrides[key]
            return removed

        removed = self._mutate(_apply)
        self._log(f"Removed {getattr(current, 'name', mod_id)} from the library.")
        if delete_payload and not removed.is_ghost and self.payload_hook is not None:
            self.payload_hook(removed)
        return removed

    # -- state --------------------------------------------------------------

    def set_enabled(self, mod_id: str, enabled: bool) -> bool:
        """Toggle a mod.  Returns False (and changes nothing) for ghosts or no-ops."""
        entry = self._library.require(mod_id)
        if entry.is_ghost:
            self._log(f"{entry.display_name} is not installed; cannot toggle it.")
            return False
        if entry.enabled == enabled:
            return False

        def _apply(lib: Library) -> None:
            lib.require(mod_id).enabled = enabled
        self._mutate(_apply)
        return True

    def reorder(self, mod_id: str, new_position: int) -> int:
        """Move an entry to new_position (clamped).  Returns the final position."""
        self._library.require(mod_id)

        def _apply(lib: Library) -> int:
            i = lib.position(mod_id)
            entry = lib.entries.pop(i)
            pos = _clamp(new_position, len(lib.entries))
            lib.entries.insert(pos, entry)
            return pos
        return self._mutate(_apply)

    def reorder_batch(self, order: list[str]) -> None:
        """Apply a full new order in one write.

        order must be a permutation of a subset of the library ids; the
        listed entries are placed, in the given order, into the slots they
        currently occupy.  Unlisted entries do not move.
        """
        known = {e.id for e in self._library.entries}
        unknown = [i for i in order if i not in known]
        if unknown:
            raise NotFoundError("mod", unknown[0])
        if len(set(order)) != len(order):
            raise ValueError("reorder_batch: duplicate ids")

        def _apply(lib: Library) -> None:
            wanted = set(order)
            slots = [i for i, e in enumerate(lib.entries) if e.id in wanted]
            by_id = {e.id: e for e in lib.entries}
            for slot, mod_id in zip(slots, order):
                lib.entries[slot] = by_id[mod_id]
        self._mutate(_apply)

    def set_override(self, output_path: str, winner_id: str | None) -> None:
        """Pin (or with None, clear) the winner of one output path."""
        key = output_key(output_path)
        if winner_id is None:
            if key not in self._library.overrides:
                raise NotFoundError("override", output_path)

            def _clear(lib: Library) -> None:
                del lib.overrides[key]
            self._mutate(_clear)
            return

        entry = self._library.require(winner_id)
        if entry.is_ghost or not entry.claims(key):
            raise NotFoundError("output path", f"{output_path} in {winner_id}")

        def _set(lib: Library) -> None:
            lib.overrides[key] = winner_id
        self._mutate(_set)

    def set_rank_pin(self, mod_id: str, pinned: bool) -> None:
        entry = self._library.require(mod_id)
        if entry.is_ghost or entry.rank_pinned == pinned:
            return

        def _apply(lib: Library) -> None:
            lib.require(mod_id).rank_pinned = pinned
        self._mutate(_apply)

    def clear_rank_pins(self) -> int:
        count = sum(1 for e in self._library.mods() if e.rank_pinned)
        if not count:
            return 0

        def _apply(lib: Library) -> None:
            for e in lib.mods():
                e.rank_pinned = False
        self._mutate(_apply)
        return count

    def replace(self, library: Library) -> None:
        """Swap in a whole library (rollback, library import)."""
        self._mutate(lambda lib: _overwrite(lib, library))


def _overwrite(target: Library, source: Library) -> None:
    target.entries = copy.deepcopy(source.entries)
    target.overrides = dict(source.overrides)
    target.version = source.version


def _drop_dead_overrides(lib: Library) -> None:
    """Drop pins whose mod no longer ships the pinned path (after a re-import)."""
    for key, mod_id in list(lib.overrides.items()):
        entry = lib.get(mod_id)
        if entry is None or entry.is_ghost or not entry.claims(key):
            del lib.overrides[key]


def _clamp(pos: int, length: int) -> int:
    return max(0, min(pos, length))
