from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from Utils import deploy as deploy_mod
from Utils.deploy import DeployEngine, DeployState, read_manifest
from Utils.errors import (
    DeployCancelled, DeployError, LinkUnsupportedError, ManifestCorruptError,
)
from Utils.library import Library, PakInfo
from Utils.modsettings import GUSTAV_DEV_UUID
from Utils.profile_backup import list_backups


@pytest.fixture
def engine(game, cache, data_dir):
    return DeployEngine(game, cache, data_dir)


@pytest.fixture
def game_dir(game_settings) -> Path:
    return game_settings.game_path


def tree_state(root: Path) -> dict[str, tuple[bool, bytes]]:
    """Every file under root: (is_symlink, content)."""
    return {
        p.relative_to(root).as_posix(): (p.is_symlink(), p.read_bytes())
        for p in sorted(root.rglob("*")) if p.is_file()
    }


class TestDeploy:
    def test_winner_is_linked(self, engine, cached_mod, game_dir):
        lib = Library(entries=[
            cached_mod("A", {"Data/x.txt": b"from A", "Data/a.txt": b"only A"}),
            cached_mod("B", {"Data/x.txt": b"from B"}),
        ])
        result = engine.deploy(lib)
        assert result.state is DeployState.COMMITTED
        assert result.added == 2
        assert result.hardlinks == 2
        assert (game_dir / "Data" / "x.txt").read_bytes() == b"from B"
        assert (game_dir / "Data" / "a.txt").read_bytes() == b"only A"
        manifest = engine.read_manifest()
        assert manifest["data/x.txt"].mod_id == "B"

    def test_second_deploy_is_incremental(self, engine, cached_mod):
        lib = Library(entries=[cached_mod("A", {"Data/x.txt": b"x", "Bin/y.dll": b"y"})])
        engine.deploy(lib)
        result = engine.deploy(lib)
        assert (result.added, result.removed, result.unchanged) == (0, 0, 2)

    def test_disable_switches_winner(self, engine, cached_mod, game_dir):
        a = cached_mod("A", {"Data/x.txt": b"from A"})
        b = cached_mod("B", {"Data/x.txt": b"from B", "Data/Public/B/b.txt": b"b"})
        engine.deploy(Library(entries=[a, b]))
        b.enabled = False
        result = engine.deploy(Library(entries=[a, b]))
        assert (game_dir / "Data" / "x.txt").read_bytes() == b"from A"
        assert not (game_dir / "Data" / "Public").exists()
        assert result.removed == 2 and result.added == 1

    def test_override_pin_deploys_pinned_winner(self, engine, cached_mod, game_dir):
        lib = Library(entries=[
            cached_mod("A", {"Data/x.txt": b"from A"}),
            cached_mod("B", {"Data/x.txt": b"from B"}),
        ], overrides={"data/x.txt": "A"})
        engine.deploy(lib)
        assert (game_dir / "Data" / "x.txt").read_bytes() == b"from A"

    def test_pak_mod_and_modsettings(self, engine, cached_mod, game_settings):
        info = PakInfo(uuid="1111-aaaa", name="Alpha", folder="Alpha")
        lib = Library(entries=[cached_mod("1111-aaaa", {"Pak/Alpha.pak": b"LSPK"}, pak_info=info)])
        result = engine.deploy(lib)
        assert (game_settings.mods_path / "Alpha.pak").read_bytes() == b"LSPK"
        assert result.modsettings_mods == 1
        text = game_settings.modsettings_path.read_text(encoding="utf-8")
        assert GUSTAV_DEV_UUID in text and "1111-aaaa" in text

    def test_existing_file_is_displaced_and_restored(self, engine, cached_mod, game_dir):
        user_file = game_dir / "Data" / "x.txt"
        user_file.write_bytes(b"user")
        result = engine.deploy(Library(entries=[cached_mod("A", {"Data/x.txt": b"mod"})]))
        assert result.displaced == 1
        assert user_file.read_bytes() == b"mod"

        result = engine.deploy(Library())
        assert result.restored == 1
        assert user_file.read_bytes() == b"user"
        assert not user_file.is_symlink()

    def test_file_replaced_outside_is_left_alone(self, engine, cached_mod, game_dir):
        engine.deploy(Library(entries=[cached_mod("A", {"Data/x.txt": b"mod"})]))
        target = game_dir / "Data" / "x.txt"
        target.unlink()
        target.write_bytes(b"hand edit")
        result = engine.deploy(Library())
        assert result.removed == 0
        assert target.read_bytes() == b"hand edit"

    def test_symlink_fallback(self, engine, cached_mod, game_dir, monkeypatch):
        def _no_hardlinks(src, dst):
            raise PermissionError(1, "Operation not permitted")
        monkeypatch.setattr(os, "link", _no_hardlinks)
        result = engine.deploy(Library(entries=[cached_mod("A", {"Data/x.txt": b"mod"})]))
        assert result.symlinks == 1
        assert (game_dir / "Data" / "x.txt").is_symlink()


class TestFailure:
    def test_failed_deploy_leaves_tree_byte_identical(self, engine, cached_mod, cache,
                                                      game_dir, monkeypatch):
        a = cached_mod("A", {"Data/x.txt": b"from A", "Data/y.txt": b"y"})
        engine.deploy(Library(entries=[a]))
        before = tree_state(game_dir)
        manifest_before = engine.manifest_path.read_bytes()

        b = cached_mod("B", {"Data/x.txt": b"from B", "Data/z.txt": b"z"})
        real_link = cache.link
        calls = {"n": 0}

        def _flaky(entry, path):
            calls["n"] += 1
            if calls["n"] == 2:
                raise LinkUnsupportedError(path, "simulated")
            return real_link(entry, path)
        monkeypatch.setattr(cache, "link", _flaky)

        with pytest.raises(DeployError) as exc:
            engine.deploy(Library(entries=[a, b]))
        assert exc.value.stage == "linking"
        assert engine.state is DeployState.ROLLED_BACK
        assert tree_state(game_dir) == before
        assert engine.manifest_path.read_bytes() == manifest_before

    def test_failure_in_manifest_write_rolls_back(self, engine, cached_mod, game_dir,
                                                  monkeypatch):
        engine.deploy(Library(entries=[cached_mod("A", {"Data/x.txt": b"from A"})]))
        before = tree_state(game_dir)
        backups_before = [b.id for b in list_backups(engine.data_dir)]

        def _boom(path, records):
            raise OSError("disk full")
        monkeypatch.setattr("Utils.deploy.write_manifest", _boom)
        with pytest.raises(DeployError) as exc:
            engine.deploy(Library(entries=[cached_mod("B", {"Data/x.txt": b"from B"})]))
        assert exc.value.stage == "manifest_write"
        assert tree_state(game_dir) == before
        assert [b.id for b in list_backups(engine.data_dir)] == backups_before

    def test_cancelled_before_linking(self, engine, cached_mod, game_dir):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DeployCancelled):
            engine.deploy(Library(entries=[cached_mod("A", {"Data/x.txt": b"x"})]),
                          cancel_event=cancel)
        assert engine.state is DeployState.ABORTED
        assert not (game_dir / "Data" / "x.txt").exists()
        assert not engine.manifest_path.exists()

    def test_corrupt_manifest_needs_full_redeploy(self, engine, cached_mod, game_dir):
        lib = Library(entries=[cached_mod("A", {"Data/x.txt": b"x", "Data/old.txt": b"o"})])
        engine.deploy(lib)
        engine.manifest_path.write_text("{broken", encoding="utf-8")
        smaller = Library(entries=[cached_mod("A", {"Data/x.txt": b"x"})])
        with pytest.raises(ManifestCorruptError):
            engine.deploy(smaller)

        result = engine.deploy(smaller, full_redeploy=True)
        assert result.state is DeployState.COMMITTED
        assert (game_dir / "Data" / "x.txt").read_bytes() == b"x"
        assert not (game_dir / "Data" / "old.txt").exists()
        assert set(read_manifest(engine.manifest_path)) == {"data/x.txt"}


class TestBackups:
    def test_rollback_restores_previous_state(self, engine, cached_mod, game_dir):
        a = cached_mod("A", {"Data/x.txt": b"from A"})
        b = cached_mod("B", {"Data/x.txt": b"from B", "Bin/b.dll": b"b"})
        engine.deploy(Library(entries=[a]))
        first = tree_state(game_dir)
        engine.deploy(Library(entries=[a, b]))
        assert (game_dir / "Data" / "x.txt").read_bytes() == b"from B"

        restored = engine.rollback()
        assert [e.id for e in restored.entries] == ["A"]
        assert tree_state(game_dir) == first

    def test_every_deploy_takes_a_backup(self, engine, cached_mod):
        lib = Library(entries=[cached_mod("A", {"Data/x.txt": b"x"})])
        first = engine.deploy(lib)
        second = engine.deploy(lib)
        ids = [b.id for b in list_backups(engine.data_dir)]
        assert ids == [second.backup_id, first.backup_id]

    def test_failed_deploy_does_not_evict_old_backups(self, engine, cached_mod, monkeypatch):
        lib = Library(entries=[cached_mod("A", {"Data/x.txt": b"x"})])
        for _ in range(10):
            engine.deploy(lib)
        kept = [b.id for b in list_backups(engine.data_dir)]
        assert len(kept) == 10

        real_write = deploy_mod.write_manifest

        def _boom(path, records):
            raise OSError("disk full")
        monkeypatch.setattr(deploy_mod, "write_manifest", _boom)
        with pytest.raises(DeployError):
            engine.deploy(Library(entries=[cached_mod("B", {"Data/y.txt": b"y"})]))
        assert [b.id for b in list_backups(engine.data_dir)] == kept

        monkeypatch.setattr(deploy_mod, "write_manifest", real_write)
        engine.deploy(lib)
        assert len(list_backups(engine.data_dir)) == 10

    def test_purge(self, engine, cached_mod, game_dir, game_settings):
        info = PakInfo(uuid="1111-aaaa", name="Alpha", folder="Alpha")
        engine.deploy(Library(entries=[
            cached_mod("1111-aaaa", {"Pak/Alpha.pak": b"LSPK"}, pak_info=info),
            cached_mod("L", {"Data/Public/L/x.txt": b"x"}),
        ]))
        result = engine.purge()
        assert result.removed == 2
        assert not (game_dir / "Data" / "Public").exists()
        assert not (game_settings.mods_path / "Alpha.pak").exists()
        text = game_settings.modsettings_path.read_text(encoding="utf-8")
        assert "1111-aaaa" not in text and GUSTAV_DEV_UUID in text
        assert engine.read_manifest() == {}

    def test_links_are_hardlinks_by_default(self, engine, cached_mod, cache, game_dir):
        lib = Library(entries=[cached_mod("A", {"Data/x.txt": b"x"})])
        assert engine.deploy(lib).hardlinks == 1
        digest = engine.read_manifest()["data/x.txt"].digest
        assert cache.is_linked(game_dir / "Data" / "x.txt", digest)
        assert not (game_dir / "Data" / "x.txt").is_symlink()
