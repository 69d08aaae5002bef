"""
interop.py
Move load orders in and out of the manager.

Two formats:

  Library export (full fidelity, our own JSON):
    {
      "format":    "garnet-library",
      "version":   1,
      "game":      "baldurs_gate_3",
      "exported_at": "2025-02-25T14:30:22",
      "entries":   [{"id": ..., "name": ..., "enabled": true, "position": 0,
                     "ghost": false, "rank_pinned": false}, ...],
      "overrides": {"<output key>": "<mod id>"}
    }
  Only state is exported, not payloads: importing it onto a library that
  holds the same mods restores order, enabled flags, rank pins and override
  pins exactly.

  modsettings.lsx (lossy, what the game and other managers read):
    an ordered list of module UUIDs.  Only enabled pak mods are exported.
    Importing one enables the listed mods, puts them in the listed relative
    order and adds placeholders for the ones this library does not have.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from Utils.errors import LibraryCorruptError
from Utils.library import GhostEntry, Library, LibraryEntry, LibraryStore
from Utils.modsettings import (
    GUSTAV_DEV_UUID, SYSTEM_UUIDS, build_modsettings_xml, pak_mods_for_modsettings,
    read_modsettings, resolve_load_order, write_text_atomic,
)

log = logging.getLogger(__name__)

EXPORT_FORMAT = "garnet-library"
EXPORT_VERSION = 1


# ---------------------------------------------------------------------------
# Library export / import
# ---------------------------------------------------------------------------

@dataclass
class LibraryImportReport:
    matched: list[str] = field(default_factory=list)
    renamed: dict[str, str] = field(default_factory=dict)   # exported id -> local id (name match)
    ghosts_created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    overrides_kept: int = 0
    overrides_dropped: int = 0


def library_export_dict(library: Library, game_id: str = "") -> dict:
    return {
        "format":      EXPORT_FORMAT,
        "version":     EXPORT_VERSION,
        "game":        game_id,
        "exported_at": datetime.now().isoformat(timespec="seconds"),
        "entries": [
            {
                "id":          e.id,
                "name":        e.name,
                "enabled":     bool(e.enabled),
                "position":    i,
                "ghost":       e.is_ghost,
                "rank_pinned": bool(e.rank_pinned),
            }
            for i, e in enumerate(library.entries)
        ],
        "overrides": dict(sorted(library.overrides.items())),
    }


def export_library(library: Library, path: Path, game_id: str = "") -> int:
    """Write the library state to path.  Returns the number of entries written."""
    data = library_export_dict(library, game_id)
    write_text_atomic(Path(path), json.dumps(data, indent=2))
    return len(data["entries"])


def _read_export(path: Path) -> dict:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise LibraryCorruptError(f"Cannot read library export {path}: {exc}") from exc
    if not isinstance(data, dict) or data.get("format") != EXPORT_FORMAT:
        raise LibraryCorruptError(f"{path} is not a library export")
    if int(data.get("version", 0)) > EXPORT_VERSION:
        raise LibraryCorruptError(
            f"{path} was written by a newer version (format version {data.get('version')})"
        )
    if not isinstance(data.get("entries"), list):
        raise LibraryCorruptError(f"{path} has no entries list")
    return data


def apply_library_export(library: Library, data: dict) -> tuple[Library, LibraryImportReport]:
    """Pure part of import_library: return the new library and what happened."""
    report = LibraryImportReport()
    by_id = {e.id: e for e in library.entries}
    by_name: dict[str, LibraryEntry] = {}
    for e in library.entries:
        if not e.is_ghost:
            by_name.setdefault(e.name.lower(), e)

    rows = sorted(
        (r for r in data["entries"] if isinstance(r, dict) and r.get("id")),
        key=lambda r: int(r.get("position", 0)),
    )
    placed: list[LibraryEntry] = []
    used: set[str] = set()
    id_map: dict[str, str] = {}
    for row in rows:
        exported_id = str(row["id"])
        name = str(row.get("name") or "")
        entry = by_id.get(exported_id)
        if entry is None and name:
            entry = by_name.get(name.lower())
            if entry is not None:
                report.renamed[exported_id] = entry.id
        if entry is not None and entry.id in used:
            entry = None
        if entry is None:
            if row.get("ghost"):
                ghost = GhostEntry(id=exported_id, name=name)
                placed.append(ghost)
                used.add(ghost.id)
                report.ghosts_created.append(ghost.id)
            else:
                report.skipped.append(f"{name or exported_id} ({exported_id})")
            continue
        entry = copy.deepcopy(entry)
        if not entry.is_ghost:
            entry.enabled = bool(row.get("enabled", entry.enabled))
            entry.rank_pinned = bool(row.get("rank_pinned", False))
        placed.append(entry)
        used.add(entry.id)
        id_map[exported_id] = entry.id
        report.matched.append(entry.id)

    # Entries the export does not mention stay, on top, in their current order
    rest = [copy.deepcopy(e) for e in library.entries if e.id not in used]
    new = Library(entries=placed + rest, overrides={}, version=library.version)

    for key, mod_id in (data.get("overrides") or {}).items():
        local = id_map.get(str(mod_id))
        entry = new.get(local) if local is not None else None
        if entry is None or entry.is_ghost or not entry.claims(str(key).lower()):
            report.overrides_dropped += 1
            continue
        new.overrides[str(key).lower()] = local
        report.overrides_kept += 1
    return new, report


def import_library(store: LibraryStore, path: Path, log_fn=None) -> LibraryImportReport:
    """Apply a library export to store in one write."""
    _log = log_fn or (lambda _: None)
    data = _read_export(path)
    new, report = apply_library_export(store.snapshot(), data)
    store.replace(new)
    _log(f"Library import: {len(report.matched)} matched, {len(report.skipped)} skipped, "
         f"{report.overrides_kept} override(s) kept.")
    for s in report.skipped:
        log.warning("Library import skipped %s: not in this library", s)
    return report


# ---------------------------------------------------------------------------
# modsettings.lsx export / import
# ---------------------------------------------------------------------------

@dataclass
class ModsettingsImportReport:
    listed: int = 0
    order: list[str] = field(default_factory=list)
    enabled: list[str] = field(default_factory=list)
    ghosts_created: list[str] = field(default_factory=list)
    reordered: bool = False


def export_modsettings(library: Library, path: Path) -> int:
    """Write the enabled pak mods of library as a modsettings.lsx.  Returns the count."""
    ordered = resolve_load_order(pak_mods_for_modsettings(library))
    write_text_atomic(Path(path), build_modsettings_xml([m.pak_info for m in ordered]))
    return len(ordered)


def apply_modsettings(library: Library, infos) -> tuple[Library, ModsettingsImportReport]:
    """Pure part of import_modsettings."""
    lib = copy.deepcopy(library)
    report = ModsettingsImportReport()
    index = {e.id.lower(): e for e in lib.entries}
    listed: list[str] = []
    for info in infos:
        low = info.uuid.lower()
        if low == GUSTAV_DEV_UUID or low in SYSTEM_UUIDS:
            continue
        entry = index.get(low)
        if entry is None:
            entry = GhostEntry(id=info.uuid, name=info.name)
            lib.entries.append(entry)
            index[low] = entry
            report.ghosts_created.append(entry.id)
        elif not entry.is_ghost and not entry.enabled:
            entry.enabled = True
            report.enabled.append(entry.id)
        if entry.id not in listed:
            listed.append(entry.id)
    report.listed = len(listed)
    report.order = list(listed)

    wanted = set(listed)
    slots = [i for i, e in enumerate(lib.entries) if e.id in wanted]
    before = [lib.entries[i].id for i in slots]
    by_id = {e.id: e for e in lib.entries}
    for slot, mod_id in zip(slots, listed):
        lib.entries[slot] = by_id[mod_id]
    report.reordered = before != listed
    return lib, report


def import_modsettings(store: LibraryStore, path: Path, log_fn=None) -> ModsettingsImportReport:
    """Apply a modsettings.lsx load order to store in one write.

    Raises ValueError if the file is not a readable modsettings.lsx.
    """
    _log = log_fn or (lambda _: None)
    infos = read_modsettings(Path(path))
    lib, report = apply_modsettings(store.snapshot(), infos)
    store.replace(lib)
    _log(f"modsettings import: {report.listed} listed, {len(report.enabled)} enabled, "
         f"{len(report.ghosts_created)} placeholder(s) added.")
    return report
