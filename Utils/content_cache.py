"""
content_cache.py
Content-addressed store of mod payloads, deployed by linking.

Every file a mod ships is stored once, under its sha256 digest:
    <cache root>/objects/<aa>/<digest>
Re-importing byte-identical content reuses the existing object; the entry
just gains another owner reference.  Objects are written once and made
read-only. Changed content gets a new digest; the old object is orphaned
and removed later by gc().

Deploying never copies.  link() hardlinks when the cache root and the target
share a device, symlinks otherwise, tries the other kind if the first one is
refused, and raises LinkUnsupportedError if neither works.  A caller that
wants a copy must make it itself.

Index format (cacheindex.txt): one header line, then one line per record:
    #cacheindex v1
    o\\t<digest>\\t<size>[\\t<owner id>...]     object + owning mods
    l\\t<digest>\\t<absolute link path>         a link we created

relocate() moves the whole cache to a new root in three steps (copy objects,
prepare replacement links beside every live link, commit with renames).  A
relocate.json journal is written just before the commit; if it is still
present when the cache is opened, the cache refuses to start.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path

from Utils.errors import (
    ImportCancelled, LinkUnsupportedError, ModManagerError,
    PartialRelocationError, RelocationAbortedError,
)

log = logging.getLogger(__name__)

_INDEX_NAME    = "cacheindex.txt"
_INDEX_HEADER  = "#cacheindex v1\n"
_JOURNAL_NAME  = "relocate.json"
_OBJECTS_DIR   = "objects"
_CHUNK         = 1 << 20
_RELOCATE_TMP  = ".garnet-relocate"

# Archive/VCS junk that is never part of a payload
IGNORED_NAMES = frozenset({"__macosx", ".git", ".svn", ".vscode", ".ds_store", "thumbs.db"})


class LinkMode(Enum):
    HARDLINK = auto()
    SYMLINK  = auto()


@dataclass
class CacheEntry:
    digest: str
    size: int
    path: Path
    refs: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class LinkResult:
    path: Path
    mode: LinkMode
    digest: str


def hash_file(path: Path) -> tuple[str, int]:
    """Return (sha256 hex digest, size) of a file."""
    h = hashlib.sha256()
    size = 0
    with Path(path).open("rb") as f:
        while True:
            chunk = f.read(_CHUNK)
            if not chunk:
                break
            h.update(chunk)
            size += len(chunk)
    return h.hexdigest(), size


def _device_of(path: Path) -> int:
    """st_dev of path, or of its nearest existing ancestor."""
    p = Path(path)
    while not p.exists():
        if p.parent == p:
            break
        p = p.parent
    return os.stat(p).st_dev


def is_ignored(rel_parts: tuple[str, ...] | list[str]) -> bool:
    return any(part.lower() in IGNORED_NAMES for part in rel_parts)


class ContentCache:

    def __init__(self, root: Path, log_fn=None):
        self._root = Path(root)
        self._log = log_fn or (lambda _: None)
        self._lock = threading.RLock()
        self._entries: dict[str, CacheEntry] = {}
        self._links: dict[str, str] = {}   # absolute link path -> digest
        self._root.mkdir(parents=True, exist_ok=True)
        journal = self._root / _JOURNAL_NAME
        if journal.is_file():
            new_root = self._root
            try:
                new_root = Path(json.loads(journal.read_text(encoding="utf-8"))["new_root"])
            except (OSError, ValueError, KeyError, TypeError):
                pass
            raise PartialRelocationError(self._root, new_root, "relocation journal found")
        self._load_index()

    # -----------------------------------------------------------------------
    # Index
    # -----------------------------------------------------------------------

    @property
    def root(self) -> Path:
        return self._root

    def object_path(self, digest: str, root: Path | None = None) -> Path:
        return (root or self._root) / _OBJECTS_DIR / digest[:2] / digest

    def _load_index(self) -> None:
        index_path = self._root / _INDEX_NAME
        if not index_path.is_file():
            return
        try:
            with index_path.open("r", encoding="utf-8") as f:
                if f.readline() != _INDEX_HEADER:
                    log.warning("Ignoring cache index with unknown header: %s", index_path)
                    return
                for line in f:
                    parts = line.rstrip("\n").split("\t")
                    if len(parts) >= 3 and parts[0] == "o":
                        digest, size = parts[1], int(parts[2])
                        self._entries[digest] = CacheEntry(
                            digest=digest, size=size,
                            path=self.object_path(digest), refs=set(parts[3:]),
                        )
                    elif len(parts) == 3 and parts[0] == "l":
                        self._links[parts[2]] = parts[1]
        except (OSError, ValueError) as exc:
            log.warning("Cache index unreadable (%s); starting empty", exc)
            self._entries.clear()
            self._links.clear()

    def save(self) -> None:
        """Write the index atomically."""
        with self._lock:
            index_path = self._root / _INDEX_NAME
            tmp = index_path.with_suffix(".tmp")
            try:
                with tmp.open("w", encoding="utf-8") as f:
                    f.write(_INDEX_HEADER)
                    for digest in sorted(self._entries):
                        e = self._entries[digest]
                        owners = "".join(f"\t{o}" for o in sorted(e.refs))
                        f.write(f"o\t{digest}\t{e.size}{owners}\n")
                    for path in sorted(self._links):
                        f.write(f"l\t{self._links[path]}\t{path}\n")
                tmp.replace(index_path)
            except OSError:
                try:
                    tmp.unlink()
                except OSError:
                    pass
                raise

    def get(self, digest: str) -> CacheEntry | None:
        return self._entries.get(digest)

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def links(self) -> dict[str, str]:
        with self._lock:
            return dict(self._links)

    # -----------------------------------------------------------------------
    # Ingest
    # -----------------------------------------------------------------------

    def _ingest(self, source: Path, owner: str) -> CacheEntry:
        digest, size = hash_file(source)
        with self._lock:
            entry = self._entries.get(digest)
            obj = self.object_path(digest)
            if entry is None or not obj.is_file():
                obj.parent.mkdir(parents=True, exist_ok=True)
                part = obj.with_name(obj.name + ".part")
                shutil.copyfile(source, part)
                os.chmod(part, 0o444)
                part.replace(obj)
                if entry is None:
                    entry = CacheEntry(digest=digest, size=size, path=obj)
                    self._entries[digest] = entry
            entry.refs.add(owner)
            return entry

    def ingest(self, source: Path, owner: str) -> CacheEntry:
        """Store one file for owner and return its entry (deduplicated by content)."""
        entry = self._ingest(Path(source), owner)
        self.save()
        return entry

    def ingest_tree(self, root: Path, owner: str, cancel_event=None,
                    progress_fn=None, skip_fn=None) -> list[tuple[str, CacheEntry]]:
        """Ingest every file under root.  Returns [(rel posix path, entry)] sorted by path.

        Junk such as __MACOSX/ or .git/ is skipped, as is any file for which
        skip_fn(path) is true.  If cancel_event is set part-way (or
        anything fails), the references taken by this call are released and
        ImportCancelled (or the original error) is raised.
        """
        root = Path(root)
        with self._lock:
            before = {d for d, e in self._entries.items() if owner in e.refs}
        files = sorted(
            (p for p in root.rglob("*")
             if p.is_file() and not is_ignored(p.relative_to(root).parts)
             and not (skip_fn is not None and skip_fn(p))),
            key=lambda p: p.relative_to(root).as_posix().lower(),
        )
        out: list[tuple[str, CacheEntry]] = []
        total = len(files)
        try:
            for done, src in enumerate(files, 1):
                if cancel_event is not None and cancel_event.is_set():
                    raise ImportCancelled(f"Import of {owner} cancelled")
                out.append((src.relative_to(root).as_posix(), self._ingest(src, owner)))
                if progress_fn is not None:
                    progress_fn(done, total)
        except BaseException:
            self.retain(owner, before)
            raise
        self.save()
        return out

    def retain(self, owner: str, keep: set[str]) -> int:
        """Drop owner's reference from every object not in keep.  Returns refs dropped."""
        dropped = 0
        with self._lock:
            for entry in self._entries.values():
                if owner in entry.refs and entry.digest not in keep:
                    entry.refs.discard(owner)
                    dropped += 1
        self.save()
        return dropped

    def release(self, owner: str) -> int:
        """Drop every reference held by owner (the mod is gone)."""
        return self.retain(owner, set())

    # -----------------------------------------------------------------------
    # Linking
    # -----------------------------------------------------------------------

    def _make_link(self, obj: Path, dst: Path, cache_root: Path) -> LinkMode:
        same_device = _device_of(cache_root) == _device_of(dst.parent)
        order = (LinkMode.HARDLINK, LinkMode.SYMLINK) if same_device else \
                (LinkMode.SYMLINK, LinkMode.HARDLINK)
        reasons: list[str] = []
        for mode in order:
            try:
                if mode is LinkMode.HARDLINK:
                    os.link(obj, dst)
                else:
                    os.symlink(obj, dst)
                return mode
            except FileExistsError:
                raise
            except OSError as exc:
                reasons.append(f"{mode.name.lower()}: {exc.strerror or exc}")
        raise LinkUnsupportedError(dst, "; ".join(reasons))

    def link(self, entry: CacheEntry, output_path: Path) -> LinkResult:
        """Link a cached object to output_path.  The destination must not exist."""
        dst = Path(output_path)
        obj = self.object_path(entry.digest)
        if not obj.is_file():
            raise LinkUnsupportedError(dst, f"cache object {entry.digest[:12]} is missing")
        dst.parent.mkdir(parents=True, exist_ok=True)
        mode = self._make_link(obj, dst, self._root)
        with self._lock:
            self._links[str(dst)] = entry.digest
        return LinkResult(path=dst, mode=mode, digest=entry.digest)

    def is_linked(self, output_path: Path, digest: str) -> bool:
        """True if output_path is a live link (either kind) to digest's object."""
        dst = Path(output_path)
        obj = self.object_path(digest)
        try:
            if dst.is_symlink():
                return Path(os.readlink(dst)) == obj
            return dst.is_file() and obj.is_file() and os.path.samefile(dst, obj)
        except OSError:
            return False

    def linked_digest(self, output_path: Path) -> str | None:
        """Digest of the cache object output_path is a live link to, or None."""
        dst = Path(output_path)
        digest = self._links.get(str(dst))
        if digest is not None and self.is_linked(dst, digest):
            return digest
        if dst.is_symlink():
            try:
                target = Path(os.readlink(dst))
            except OSError:
                return None
            if (self._root / _OBJECTS_DIR) in target.parents and target.is_file():
                return target.name
        return None

    def owns_path(self, output_path: Path) -> bool:
        """True if output_path is a live link into this cache (any object)."""
        return self.linked_digest(output_path) is not None

    def unlink(self, output_path: Path) -> bool:
        """Remove a link into this cache.  Unknown or foreign files are left alone."""
        dst = Path(output_path)
        if self.linked_digest(dst) is None:
            self.forget_link(dst)
            return False
        dst.unlink()
        self.forget_link(dst)
        return True

    def forget_link(self, output_path: Path) -> None:
        with self._lock:
            self._links.pop(str(output_path), None)

    # -----------------------------------------------------------------------
    # Garbage collection
    # -----------------------------------------------------------------------

    def gc(self) -> int:
        """Delete objects with no live links and no owner.  Returns the number removed."""
        removed = 0
        with self._lock:
            for path, digest in list(self._links.items()):
                if not self.is_linked(Path(path), digest):
                    del self._links[path]
            live = set(self._links.values())
            for digest, entry in list(self._entries.items()):
                if entry.refs or digest in live:
                    continue
                self.object_path(digest).unlink(missing_ok=True)
                del self._entries[digest]
                removed += 1
            # Leftovers from interrupted ingests
            objects = self._root / _OBJECTS_DIR
            if objects.is_dir():
                for fan in objects.iterdir():
                    if not fan.is_dir():
                        continue
                    for obj in fan.iterdir():
                        if obj.name not in self._entries:
                            obj.unlink(missing_ok=True)
                    try:
                        fan.rmdir()
                    except OSError:
                        pass
        self.save()
        if removed:
            self._log(f"Cache: removed {removed} unused object(s).")
        return removed

    # -----------------------------------------------------------------------
    # Relocation
    # -----------------------------------------------------------------------

    def relocate(self, new_root: Path) -> None:
        """Move the cache to new_root, re-pointing every live link.

        Either every live link ends up pointing into new_root, or the call
        raises RelocationAbortedError and the old root is untouched.  If a
        failure during the commit cannot be undone, PartialRelocationError is
        raised and the journal is left in place.
        """
        old_root = self._root
        new_root = Path(new_root)
        if new_root.resolve() == old_root.resolve():
            return
        if old_root.resolve() in new_root.resolve().parents or \
                new_root.resolve() in old_root.resolve().parents:
            raise RelocationAbortedError("New cache root cannot be inside the old one (or vice versa).")
        created_root = not new_root.exists()
        if not created_root and any(new_root.iterdir()):
            raise RelocationAbortedError(f"New cache root is not empty: {new_root}")

        with self._lock:
            live = [(Path(p), d) for p, d in self._links.items() if self.is_linked(Path(p), d)]
            prepared: list[tuple[Path, Path]] = []

            def _discard_new() -> None:
                for _, tmp in prepared:
                    tmp.unlink(missing_ok=True)
                if created_root:
                    shutil.rmtree(new_root, ignore_errors=True)
                    return
                for child in new_root.iterdir():
                    if child.is_dir():
                        shutil.rmtree(child, ignore_errors=True)
                    else:
                        child.unlink()

            # Copy objects, then prepare replacement links beside their targets
            try:
                new_root.mkdir(parents=True, exist_ok=True)
                for digest in self._entries:
                    src = self.object_path(digest)
                    if not src.is_file():
                        continue
                    dst = self.object_path(digest, new_root)
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(src, dst)
                    os.chmod(dst, 0o444)
                for path, digest in live:
                    tmp = path.with_name(path.name + _RELOCATE_TMP)
                    tmp.unlink(missing_ok=True)
                    self._make_link(self.object_path(digest, new_root), tmp, new_root)
                    prepared.append((path, tmp))
            except (OSError, ModManagerError) as exc:
                _discard_new()
                raise RelocationAbortedError(f"Relocation aborted, cache left at {old_root}: {exc}") from exc

            journal = old_root / _JOURNAL_NAME
            journal.write_text(json.dumps({
                "old_root": str(old_root),
                "new_root": str(new_root),
                "links":    [str(p) for p, _ in prepared],
            }, indent=2), encoding="utf-8")

            # Commit
            committed: list[tuple[Path, str]] = []
            digests = dict(live)
            try:
                for path, tmp in prepared:
                    os.replace(tmp, path)
                    committed.append((path, digests[path]))
            except OSError as exc:
                try:
                    for path, digest in committed:
                        path.unlink()
                        self._make_link(self.object_path(digest), path, old_root)
                    _discard_new()
                except (OSError, ModManagerError) as undo_exc:
                    raise PartialRelocationError(old_root, new_root, str(undo_exc)) from exc
                journal.unlink(missing_ok=True)
                raise RelocationAbortedError(f"Relocation aborted, cache left at {old_root}: {exc}") from exc

            self._root = new_root
            for entry in self._entries.values():
                entry.path = self.object_path(entry.digest)
            self.save()
            shutil.rmtree(old_root / _OBJECTS_DIR, ignore_errors=True)
            (old_root / _INDEX_NAME).unlink(missing_ok=True)
            journal.unlink(missing_ok=True)
            try:
                old_root.rmdir()
            except OSError:
                pass
        self._log(f"Cache moved to {new_root} ({len(live)} link(s) re-pointed).")
