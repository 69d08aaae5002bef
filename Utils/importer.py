"""
importer.py
Turn an archive, a folder or a single .pak into library entries.

Flow for one source path:
  1. Archives are extracted into a private folder under the staging dir
     (zip, 7z, rar, tar.*).  Folders and .pak files are read in place.
  2. scan_payload() classifies the tree:
       - every .pak anywhere becomes its own pak mod
       - the shallowest Data/, Generated/ and bin/ folders are loose targets
       - a Public/ folder outside Data/Generated goes to Generated/Public
       - script-extender files at the root (and nothing else) make the root
         itself the bin folder
  3. Each mod's files are ingested into the content cache under the mod's id
     and described as FileEntry records.  Nothing is deployed here.

The staging folder is removed whether the import succeeds, fails or is
cancelled.  A cancelled or failed import also drops every cache reference
it took, so a half-imported mod never keeps objects alive.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tarfile
import uuid
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import py7zr

from Utils.content_cache import ContentCache, IGNORED_NAMES
from Utils.errors import ImportCancelled, ImportUnsupportedError
from Utils.library import (
    FileEntry, ModEntry, NativeOrigin, PakInfo, TargetKind,
    clean_source_label, normalize_rel_path,
)
from Utils.modsettings import parse_meta_lsx
from Utils.pak_reader import PakFormatError, extract_meta_lsx

log = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (
    ".zip", ".7z", ".rar",
    ".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz",
)

# Metadata sidecars, best first
_JSON_PRIORITY = {"info.json": 0, "mod.json": 1, "modinfo.json": 2}

# Files that mark the payload root as a bin/ drop-in (Script Extender & co.)
_BIN_ROOT_FILES = {"dwrite.dll", "bink2w64.dll", "scriptextendersettings.json"}


def is_archive(path: Path | str) -> bool:
    lower = str(path).lower()
    return any(lower.endswith(s) for s in ARCHIVE_SUFFIXES)


def source_label(path: Path | str) -> str:
    """Display label of an import source: the file name without archive extensions."""
    name = Path(path).name
    lower = name.lower()
    for suffix in sorted(ARCHIVE_SUFFIXES + (".pak",), key=len, reverse=True):
        if lower.endswith(suffix):
            return name[: -len(suffix)]
    return name


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract_archive(archive_path: Path | str, dest: Path | str, log_fn=None) -> None:
    """Extract archive_path into dest (which is created).

    7z and rar archives that their pure-Python readers reject are retried
    through libarchive.  Raises ImportUnsupportedError for unknown formats.
    """
    _log = log_fn or (lambda _: None)
    archive_path = str(archive_path)
    extract_dir = str(dest)
    os.makedirs(extract_dir, exist_ok=True)
    ext = archive_path.lower()

    if ext.endswith(".zip"):
        with zipfile.ZipFile(archive_path, "r") as z:
            z.extractall(extract_dir)
    elif ext.endswith(".7z"):
        try:
            with py7zr.SevenZipFile(archive_path, "r") as z:
                z.extractall(extract_dir)
        except Exception as e7:
            _log(f"py7zr failed ({e7}), retrying with libarchive…")
            shutil.rmtree(extract_dir, ignore_errors=True)
            os.makedirs(extract_dir, exist_ok=True)
            import libarchive
            prev_cwd = os.getcwd()
            try:
                os.chdir(extract_dir)
                libarchive.extract_file(archive_path)
            finally:
                os.chdir(prev_cwd)
    elif any(ext.endswith(s) for s in (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")):
        with tarfile.open(archive_path, "r:*") as t:
            t.extractall(extract_dir, filter="data")
    elif ext.endswith(".rar"):
        try:
            import rarfile
            with rarfile.RarFile(archive_path, "r") as r:
                r.extractall(extract_dir)
        except Exception as e_rar:
            _log(f"rarfile failed ({e_rar}), trying libarchive…")
            shutil.rmtree(extract_dir, ignore_errors=True)
            os.makedirs(extract_dir, exist_ok=True)
            import libarchive
            with libarchive.file_reader(archive_path) as _arc:
                for _entry in _arc:
                    rel = normalize_rel_path(_entry.pathname)
                    if not rel:
                        continue
                    _dest = os.path.join(extract_dir, rel.replace("/", os.sep))
                    if _entry.isdir:
                        os.makedirs(_dest, exist_ok=True)
                        continue
                    os.makedirs(os.path.dirname(_dest) or extract_dir, exist_ok=True)
                    with open(_dest, "wb") as _fh:
                        for _block in _entry.get_blocks():
                            _fh.write(_block)
    else:
        raise ImportUnsupportedError(
            f"Unsupported archive format: {os.path.basename(archive_path)} "
            "(supported: .zip, .7z, .rar, .tar.*, or a folder / .pak)"
        )


# ---------------------------------------------------------------------------
# Payload classification
# ---------------------------------------------------------------------------

@dataclass
class PayloadScan:
    root: Path
    paks: list[Path] = field(default_factory=list)
    data_dir: Path | None = None
    generated_dir: Path | None = None
    public_dir: Path | None = None
    bin_dir: Path | None = None
    meta_lsx: Path | None = None
    json_meta: Path | None = None

    @property
    def has_loose_targets(self) -> bool:
        return any(d is not None for d in
                   (self.data_dir, self.generated_dir, self.public_dir, self.bin_dir))

    def loose_targets(self) -> list[tuple[TargetKind, Path, str]]:
        """(target, source folder, prefix inside the target) for each loose folder."""
        out: list[tuple[TargetKind, Path, str]] = []
        if self.data_dir is not None:
            out.append((TargetKind.DATA, self.data_dir, ""))
        if self.generated_dir is not None:
            out.append((TargetKind.GENERATED, self.generated_dir, ""))
        elif self.public_dir is not None:
            out.append((TargetKind.GENERATED, self.public_dir, "Public"))
        if self.bin_dir is not None:
            out.append((TargetKind.BIN, self.bin_dir, ""))
        return out


def _is_bin_root_file(name: str) -> bool:
    lower = name.lower()
    return lower in _BIN_ROOT_FILES or "scriptextender" in lower or "bg3se" in lower


def _shallowest(found: list[tuple[int, Path]]) -> Path | None:
    if not found:
        return None
    return min(found, key=lambda t: (t[0], str(t[1]).lower()))[1]


def scan_payload(root: Path | str) -> PayloadScan:
    """Classify an extracted payload.  Pure filesystem read, nothing is changed."""
    root = Path(root)
    scan = PayloadScan(root=root)
    dirs: dict[str, list[tuple[int, Path]]] = {"data": [], "generated": [], "bin": [], "public": []}
    metas: list[tuple[bool, int, Path]] = []
    jsons: list[tuple[int, int, Path]] = []
    root_bin_marker = False

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d.lower() not in IGNORED_NAMES)
        here = Path(dirpath)
        rel_parts = here.relative_to(root).parts
        depth = len(rel_parts)
        for d in dirnames:
            lower = d.lower()
            if lower not in dirs:
                continue
            # Anything inside a Data/ or Generated/ folder already ships with it
            if {p.lower() for p in rel_parts} & {"data", "generated"}:
                continue
            dirs[lower].append((depth + 1, here / d))
        for name in sorted(filenames):
            if name.lower() in IGNORED_NAMES:
                continue
            lower = name.lower()
            path = here / name
            if lower.endswith(".pak"):
                scan.paks.append(path)
            if depth == 0 and _is_bin_root_file(name):
                root_bin_marker = True
            if lower == "meta.lsx":
                under_mods = any(p.lower() == "mods" for p in rel_parts)
                metas.append((not under_mods, depth, path))
            if lower in _JSON_PRIORITY:
                jsons.append((_JSON_PRIORITY[lower], depth, path))

    scan.data_dir = _shallowest(dirs["data"])
    scan.generated_dir = _shallowest(dirs["generated"])
    scan.bin_dir = _shallowest(dirs["bin"])
    scan.public_dir = _shallowest(dirs["public"])
    if metas:
        scan.meta_lsx = min(metas, key=lambda t: (t[0], t[1], str(t[2]).lower()))[2]
    if jsons:
        scan.json_meta = min(jsons, key=lambda t: (t[0], t[1], str(t[2]).lower()))[2]

    if root_bin_marker and not scan.paks and not scan.has_loose_targets:
        scan.bin_dir = root
    return scan


# ---------------------------------------------------------------------------
# Metadata helpers
# ---------------------------------------------------------------------------

@dataclass
class JsonModInfo:
    uuid: str = ""
    folder: str = ""
    name: str = ""
    created_at: int | None = None
    dependencies: list[str] = field(default_factory=list)


def _parse_created(raw) -> int | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        return int(datetime.fromisoformat(raw.strip().replace("Z", "+00:00")).timestamp())
    except ValueError:
        return None


def _json_dependencies(obj: dict) -> list[str]:
    out: set[str] = set()
    for key in ("Dependencies", "dependencies", "RequiredMods", "requiredMods"):
        value = obj.get(key)
        if not isinstance(value, list):
            continue
        for item in value:
            if isinstance(item, str) and item.strip():
                out.add(item.strip())
            elif isinstance(item, dict):
                dep = item.get("UUID") or item.get("uuid")
                if isinstance(dep, str) and dep.strip():
                    out.add(dep.strip())
    return sorted(out)


def read_json_mods(path: Path) -> list[JsonModInfo]:
    """Parse an info.json / mod.json sidecar.  Unreadable files give []."""
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        log.debug("Ignoring metadata file %s: %s", path, exc)
        return []
    if isinstance(data, dict) and isinstance(data.get("Mods"), list):
        items = data["Mods"]
    else:
        items = [data]
    out: list[JsonModInfo] = []
    for obj in items:
        if not isinstance(obj, dict):
            continue
        out.append(JsonModInfo(
            uuid=str(obj.get("UUID") or ""),
            folder=str(obj.get("Folder") or ""),
            name=str(obj.get("Name") or ""),
            created_at=_parse_created(obj.get("Created") or obj.get("created")),
            dependencies=_json_dependencies(obj),
        ))
    return out


def _read_pak_meta(pak: Path) -> tuple[PakInfo, list[str]] | None:
    try:
        text = extract_meta_lsx(pak)
    except (PakFormatError, OSError, UnicodeDecodeError) as exc:
        log.warning("Cannot read %s as a pak: %s", pak.name, exc)
        return None
    return parse_meta_lsx(text) if text else None


def _pak_info_from_json(info: JsonModInfo, fallback: str) -> PakInfo | None:
    if not info.uuid:
        return None
    folder = info.folder or info.name or fallback
    return PakInfo(uuid=info.uuid, name=info.name or folder, folder=folder)


def _hash_path(path: Path, prefix: str, member: str = "") -> str:
    """Stable id for a source: same path, mtime and member give the same id.

    member is the file's path inside an archive or folder source, so a pak
    extracted into a fresh staging folder keeps its id across re-imports.
    """
    p = Path(path).resolve()
    try:
        mtime = p.stat().st_mtime_ns
    except OSError:
        mtime = 0
    digest = hashlib.sha256(f"{p}\0{mtime}\0{member}".encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

class _RefTracker:
    """Remembers each owner's refs before the import so they can be restored."""

    def __init__(self, cache: ContentCache):
        self._cache = cache
        self._before: dict[str, set[str]] = {}

    def touch(self, owner: str) -> None:
        if owner not in self._before:
            self._before[owner] = {e.digest for e in self._cache.entries() if owner in e.refs}

    def restore(self) -> None:
        for owner, before in self._before.items():
            self._cache.retain(owner, before)


def _check_cancel(cancel_event, what: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ImportCancelled(f"Import of {what} cancelled")


def _import_pak(pak: Path, label: str, json_mods: list[JsonModInfo], cache: ContentCache,
                refs: _RefTracker, allow_json_fallback: bool,
                source: Path | None = None, member: str = "") -> ModEntry:
    parsed = _read_pak_meta(pak)
    deps: list[str] = []
    if parsed is not None:
        info, deps = parsed
        if not info.folder:
            info.folder = info.name or pak.stem
        if not info.name:
            info.name = info.folder
    else:
        info = None
        if allow_json_fallback:
            for jm in json_mods:
                info = _pak_info_from_json(jm, pak.stem)
                if info is not None:
                    break

    if info is None:
        mod_id = _hash_path(source or pak, "pak", member)
        refs.touch(mod_id)
        entry = cache.ingest(pak, owner=mod_id)
        return ModEntry(
            id=mod_id,
            name=f"Override Pak: {label or pak.stem}",
            files=[FileEntry(TargetKind.DATA, pak.name, entry.size, entry.digest)],
            source_label=label,
        )

    matches = [jm for jm in json_mods
               if (jm.uuid and jm.uuid == info.uuid)
               or (jm.folder and jm.folder == info.folder)
               or (jm.name and jm.name == info.name)]
    for jm in matches:
        deps.extend(jm.dependencies)
    seen: set[str] = set()
    dependencies: list[str] = []
    for dep in sorted(deps):
        low = dep.lower()
        if low == info.uuid.lower() or low in seen:
            continue
        seen.add(low)
        dependencies.append(dep)

    refs.touch(info.uuid)
    entry = cache.ingest(pak, owner=info.uuid)
    return ModEntry(
        id=info.uuid,
        name=info.name,
        files=[FileEntry(TargetKind.PAK, f"{info.folder}.pak", entry.size, entry.digest)],
        dependencies=dependencies,
        created_at=next((jm.created_at for jm in matches if jm.created_at), None),
        source_label=label,
        pak_info=info,
    )


def _import_loose(scan: PayloadScan, source: Path, label: str, cache: ContentCache,
                  refs: _RefTracker, cancel_event, progress_fn) -> ModEntry:
    mod_id = _hash_path(source, "loose")
    refs.touch(mod_id)
    pak_set = set(scan.paks)
    files: list[FileEntry] = []
    for kind, folder, prefix in scan.loose_targets():
        ingested = cache.ingest_tree(folder, owner=mod_id, cancel_event=cancel_event,
                                     progress_fn=progress_fn,
                                     skip_fn=lambda p: p in pak_set)
        for rel, entry in ingested:
            rel_path = normalize_rel_path(f"{prefix}/{rel}" if prefix else rel)
            files.append(FileEntry(kind, rel_path, entry.size, entry.digest))

    deps: list[str] = []
    if scan.meta_lsx is not None:
        try:
            parsed = parse_meta_lsx(scan.meta_lsx.read_text(encoding="utf-8-sig"))
        except (OSError, UnicodeDecodeError):
            parsed = None
        if parsed is not None:
            deps = [d for d in parsed[1] if d.lower() != mod_id]

    name = clean_source_label(label) or "Loose Files"
    return ModEntry(id=mod_id, name=name, files=files, dependencies=deps, source_label=label)


def import_path(path: Path | str, cache: ContentCache, staging_dir: Path,
                cancel_event=None, log_fn=None, progress_fn=None) -> list[ModEntry]:
    """Import one source (archive, folder or .pak) and return the mods it holds.

    The returned entries are not added to any library; the caller does that.
    Raises ImportUnsupportedError if nothing installable is found and
    ImportCancelled if cancel_event is set part-way.
    """
    _log = log_fn or (lambda _: None)
    source = Path(path)
    if not source.exists():
        raise ImportUnsupportedError(f"No such file or folder: {source}")
    label = source_label(source)
    refs = _RefTracker(cache)
    stage = Path(staging_dir) / f"import-{uuid.uuid4().hex[:12]}"

    try:
        _check_cancel(cancel_event, label)
        if source.is_file() and source.suffix.lower() == ".pak":
            _log(f"Importing {source.name}…")
            return [_import_pak(source, label, [], cache, refs, allow_json_fallback=False)]

        if source.is_dir():
            payload = source
        elif is_archive(source):
            _log(f"Extracting {source.name}…")
            extract_archive(source, stage, log_fn=_log)
            payload = stage
        else:
            raise ImportUnsupportedError(
                f"{source.name} is not an archive, folder or .pak file"
            )

        _check_cancel(cancel_event, label)
        scan = scan_payload(payload)
        if not scan.paks and not scan.has_loose_targets:
            raise ImportUnsupportedError(
                f"{source.name}: no .pak files and no Data/, Generated/, Public/ or "
                "bin/ folders found.  Nothing to install."
            )

        json_mods = read_json_mods(scan.json_meta) if scan.json_meta is not None else []
        mods: list[ModEntry] = []
        single_pak = len(scan.paks) == 1
        for pak in scan.paks:
            _check_cancel(cancel_event, label)
            pak_label = label if single_pak else pak.stem
            mods.append(_import_pak(pak, pak_label, json_mods, cache, refs,
                                    allow_json_fallback=single_pak, source=source,
                                    member=pak.relative_to(payload).as_posix()))
        if scan.has_loose_targets:
            loose = _import_loose(scan, source, label, cache, refs, cancel_event, progress_fn)
            if loose.files:
                mods.append(loose)
        if not mods:
            raise ImportUnsupportedError(f"{source.name}: the payload folders are empty.")
        for m in mods:
            _log(f"Imported {m.name} ({len(m.files)} file(s)).")
        return mods
    except BaseException:
        refs.restore()
        raise
    finally:
        if stage.exists():
            shutil.rmtree(stage, ignore_errors=True)


# ---------------------------------------------------------------------------
# Native sync
# ---------------------------------------------------------------------------

def scan_native_mods(mods_dir: Path | None, owned_names: set[str]) -> list[ModEntry]:
    """Paks in the game's Mods folder that deploy did not put there.

    owned_names holds lowercase file names the deploy manifest owns in that
    folder.  Each remaining pak becomes a NativeOrigin entry with no files,
    so it takes part in load order and dependencies but is never deployed.
    """
    if mods_dir is None or not mods_dir.is_dir():
        return []
    out: list[ModEntry] = []
    for pak in sorted(mods_dir.iterdir(), key=lambda p: p.name.lower()):
        if not pak.is_file() or pak.suffix.lower() != ".pak":
            continue
        if pak.name.lower() in owned_names:
            continue
        parsed = _read_pak_meta(pak)
        if parsed is not None:
            info, deps = parsed
            mod_id, name = info.uuid, info.name or pak.stem
            if not info.folder:
                info.folder = pak.stem
        else:
            info, deps = None, []
            mod_id = "native-" + hashlib.sha256(pak.name.lower().encode("utf-8")).hexdigest()[:16]
            name = pak.stem
        out.append(ModEntry(
            id=mod_id,
            name=name,
            origin=NativeOrigin(external_id=pak.name),
            dependencies=[d for d in deps if d.lower() != mod_id.lower()],
            source_label=pak.name,
            pak_info=info,
        ))
    return out
