from __future__ import annotations

import json
import os
import stat
import threading

import pytest

from Utils.content_cache import ContentCache, LinkMode, hash_file, is_ignored
from Utils.errors import (
    ImportCancelled, LinkUnsupportedError, PartialRelocationError, RelocationAbortedError,
)


def _write(path, data: bytes):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


class TestIngest:
    def test_dedup_same_content(self, tmp_path, cache):
        """Byte-identical files from two mods share one object with two refs."""
        a = cache.ingest(_write(tmp_path / "a.txt", b"same"), owner="A")
        b = cache.ingest(_write(tmp_path / "b.txt", b"same"), owner="B")
        assert a.digest == b.digest
        assert len(cache.entries()) == 1
        assert cache.get(a.digest).refs == {"A", "B"}

    def test_object_is_read_only(self, tmp_path, cache):
        entry = cache.ingest(_write(tmp_path / "a.txt", b"data"), owner="A")
        assert stat.S_IMODE(os.stat(cache.object_path(entry.digest)).st_mode) == 0o444
        assert cache.object_path(entry.digest).read_bytes() == b"data"

    def test_hash_file(self, tmp_path):
        digest, size = hash_file(_write(tmp_path / "a.txt", b"abc"))
        assert size == 3
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_ingest_tree_skips_junk(self, tmp_path, cache):
        root = tmp_path / "payload"
        _write(root / "Public" / "x.txt", b"x")
        _write(root / "__MACOSX" / "x.txt", b"junk")
        _write(root / "keep.pak", b"pak")
        out = cache.ingest_tree(root, owner="A", skip_fn=lambda p: p.suffix == ".pak")
        assert [rel for rel, _ in out] == ["Public/x.txt"]

    def test_ingest_tree_cancel_releases_refs(self, tmp_path, cache):
        root = tmp_path / "payload"
        for i in range(3):
            _write(root / f"f{i}.txt", f"{i}".encode())
        cancel = threading.Event()

        def _progress(done, total):
            if done == 2:
                cancel.set()
        with pytest.raises(ImportCancelled):
            cache.ingest_tree(root, owner="A", cancel_event=cancel, progress_fn=_progress)
        assert all("A" not in e.refs for e in cache.entries())

    def test_is_ignored(self):
        assert is_ignored(("__MACOSX", "a"))
        assert not is_ignored(("Public", "a"))

    def test_index_survives_reopen(self, tmp_path, cache):
        entry = cache.ingest(_write(tmp_path / "a.txt", b"data"), owner="A")
        reopened = ContentCache(cache.root)
        assert reopened.get(entry.digest).refs == {"A"}


class TestLinking:
    def test_link_same_device_hardlinks(self, tmp_path, cache):
        entry = cache.ingest(_write(tmp_path / "a.txt", b"data"), owner="A")
        dst = tmp_path / "game" / "Data" / "a.txt"
        result = cache.link(entry, dst)
        assert result.mode is LinkMode.HARDLINK
        assert dst.read_bytes() == b"data"
        assert cache.is_linked(dst, entry.digest)
        assert cache.owns_path(dst)

    def test_link_falls_back_to_symlink(self, tmp_path, cache, monkeypatch):
        entry = cache.ingest(_write(tmp_path / "a.txt", b"data"), owner="A")

        def _no_hardlinks(src, dst):
            raise PermissionError(1, "Operation not permitted")
        monkeypatch.setattr(os, "link", _no_hardlinks)
        dst = tmp_path / "game" / "a.txt"
        assert cache.link(entry, dst).mode is LinkMode.SYMLINK
        assert dst.is_symlink()
        assert cache.linked_digest(dst) == entry.digest

    def test_link_unsupported(self, tmp_path, cache, monkeypatch):
        entry = cache.ingest(_write(tmp_path / "a.txt", b"data"), owner="A")

        def _refuse(src, dst):
            raise PermissionError(1, "Operation not permitted")
        monkeypatch.setattr(os, "link", _refuse)
        monkeypatch.setattr(os, "symlink", _refuse)
        with pytest.raises(LinkUnsupportedError):
            cache.link(entry, tmp_path / "game" / "a.txt")

    def test_unlink_leaves_foreign_files(self, tmp_path, cache):
        foreign = _write(tmp_path / "game" / "user.txt", b"mine")
        assert cache.unlink(foreign) is False
        assert foreign.read_bytes() == b"mine"


class TestGc:
    def test_gc_keeps_referenced_and_linked(self, tmp_path, cache):
        kept = cache.ingest(_write(tmp_path / "a.txt", b"kept"), owner="A")
        linked = cache.ingest(_write(tmp_path / "b.txt", b"linked"), owner="B")
        dead = cache.ingest(_write(tmp_path / "c.txt", b"dead"), owner="C")
        cache.link(linked, tmp_path / "game" / "b.txt")
        cache.release("B")
        cache.release("C")
        assert cache.gc() == 1
        assert cache.get(kept.digest) is not None
        assert cache.get(linked.digest) is not None
        assert cache.get(dead.digest) is None
        assert not cache.object_path(dead.digest).exists()

    def test_retain_drops_other_refs(self, tmp_path, cache):
        old = cache.ingest(_write(tmp_path / "a.txt", b"v1"), owner="A")
        new = cache.ingest(_write(tmp_path / "b.txt", b"v2"), owner="A")
        assert cache.retain("A", {new.digest}) == 1
        assert cache.get(old.digest).refs == set()


class TestRelocate:
    def test_relocate_repoints_links(self, tmp_path, cache):
        entry = cache.ingest(_write(tmp_path / "a.txt", b"data"), owner="A")
        dst = tmp_path / "game" / "a.txt"
        cache.link(entry, dst)
        old_root = cache.root
        new_root = tmp_path / "elsewhere" / "cache"
        cache.relocate(new_root)
        assert cache.root == new_root
        assert cache.is_linked(dst, entry.digest)
        assert dst.read_bytes() == b"data"
        assert not (old_root / "objects").exists()
        assert ContentCache(new_root).get(entry.digest).refs == {"A"}

    def test_relocate_into_non_empty_dir_aborts(self, tmp_path, cache):
        entry = cache.ingest(_write(tmp_path / "a.txt", b"data"), owner="A")
        target = tmp_path / "busy"
        _write(target / "other.txt", b"x")
        with pytest.raises(RelocationAbortedError):
            cache.relocate(target)
        assert cache.object_path(entry.digest).is_file()

    def test_relocate_failure_leaves_old_root(self, tmp_path, cache, monkeypatch):
        entry = cache.ingest(_write(tmp_path / "a.txt", b"data"), owner="A")
        dst = tmp_path / "game" / "a.txt"
        cache.link(entry, dst)
        new_root = tmp_path / "new"

        def _refuse(*args, **kwargs):
            raise PermissionError(1, "Operation not permitted")
        with monkeypatch.context() as m:
            m.setattr(os, "link", _refuse)
            m.setattr(os, "symlink", _refuse)
            with pytest.raises(RelocationAbortedError):
                cache.relocate(new_root)
        assert cache.is_linked(dst, entry.digest)
        assert not new_root.exists()

    def test_journal_blocks_startup(self, tmp_path, cache):
        (cache.root / "relocate.json").write_text(
            json.dumps({"new_root": str(tmp_path / "new")}), encoding="utf-8")
        with pytest.raises(PartialRelocationError) as exc:
            ContentCache(cache.root)
        assert exc.value.new_root == tmp_path / "new"
