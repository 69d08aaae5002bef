from __future__ import annotations

import json

import pytest

from Utils.errors import LibraryCorruptError
from Utils.interop import (
    EXPORT_FORMAT, export_library, export_modsettings, import_library, import_modsettings,
)
from Utils.library import LibraryStore, PakInfo
from Utils.modsettings import GUSTAV_DEV_UUID, build_modsettings_xml, read_modsettings

UUID_A = "aaaaaaaa-0000-0000-0000-000000000001"
UUID_B = "bbbbbbbb-0000-0000-0000-000000000002"
UUID_C = "cccccccc-0000-0000-0000-000000000003"
UUID_X = "eeeeeeee-0000-0000-0000-000000000009"


@pytest.fixture
def store(tmp_path, mkmod):
    s = LibraryStore(tmp_path / "library.json")
    s.add(mkmod("A", "Data/x.txt"))
    s.add(mkmod("B", "Data/x.txt", "Data/y.txt"))
    s.add(mkmod("C", "Data/z.txt", enabled=False))
    return s


def _ids(store):
    return [e.id for e in store.snapshot().entries]


class TestLibraryExport:
    def test_round_trip_restores_state(self, tmp_path, store):
        store.set_override("Data/x.txt", "A")
        store.set_rank_pin("B", True)
        path = tmp_path / "export.json"
        assert export_library(store.snapshot(), path, "baldurs_gate_3") == 3
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["format"] == EXPORT_FORMAT
        assert data["game"] == "baldurs_gate_3"

        store.reorder("A", 2)
        store.set_enabled("C", True)
        store.clear_rank_pins()
        store.set_override("Data/x.txt", None)

        report = import_library(store, path)
        lib = store.snapshot()
        assert _ids(store) == ["A", "B", "C"]
        assert not lib.require("C").enabled
        assert lib.require("B").rank_pinned
        assert lib.overrides == {"data/x.txt": "A"}
        assert report.matched == ["A", "B", "C"]
        assert report.overrides_kept == 1

    def test_unknown_entries_are_skipped_and_name_matches_rename(self, tmp_path, store):
        path = tmp_path / "export.json"
        path.write_text(json.dumps({
            "format": EXPORT_FORMAT, "version": 1,
            "entries": [
                {"id": "old-b-id", "name": "b", "enabled": False, "position": 0},
                {"id": "gone", "name": "Gone", "enabled": True, "position": 1},
                {"id": UUID_X, "name": "Placeholder", "position": 2, "ghost": True},
            ],
            "overrides": {"data/y.txt": "old-b-id", "data/x.txt": "gone"},
        }), encoding="utf-8")
        report = import_library(store, path)
        assert report.renamed == {"old-b-id": "B"}
        assert report.skipped == ["Gone (gone)"]
        assert report.ghosts_created == [UUID_X]
        assert (report.overrides_kept, report.overrides_dropped) == (1, 1)

        lib = store.snapshot()
        # Unlisted entries keep their relative order above the listed ones
        assert _ids(store) == ["B", UUID_X, "A", "C"]
        assert lib.require(UUID_X).is_ghost
        assert not lib.require("B").enabled
        assert lib.overrides == {"data/y.txt": "B"}

    @pytest.mark.parametrize("content", [
        "{not json",
        json.dumps({"format": "something-else", "entries": []}),
        json.dumps({"format": EXPORT_FORMAT, "version": 99, "entries": []}),
        json.dumps({"format": EXPORT_FORMAT, "version": 1}),
    ])
    def test_bad_export(self, tmp_path, store, content):
        path = tmp_path / "export.json"
        path.write_text(content, encoding="utf-8")
        before = _ids(store)
        with pytest.raises(LibraryCorruptError):
            import_library(store, path)
        assert _ids(store) == before


class TestModsettingsInterop:
    @pytest.fixture
    def pak_store(self, tmp_path, mkmod):
        s = LibraryStore(tmp_path / "library.json")
        s.add(mkmod(UUID_A, "Pak/A.pak", pak=True))
        s.add(mkmod(UUID_B, "Pak/B.pak", pak=True, enabled=False))
        s.add(mkmod("loose", "Data/x.txt"))
        s.add(mkmod(UUID_C, "Pak/C.pak", pak=True))
        return s

    def test_export_lists_enabled_paks(self, tmp_path, pak_store):
        path = tmp_path / "out.lsx"
        assert export_modsettings(pak_store.snapshot(), path) == 2
        assert [i.uuid for i in read_modsettings(path)] == [GUSTAV_DEV_UUID, UUID_A, UUID_C]

    def test_import_enables_reorders_and_adds_placeholders(self, tmp_path, pak_store):
        path = tmp_path / "in.lsx"
        path.write_text(build_modsettings_xml([
            PakInfo(uuid=UUID_C, name="C", folder="C"),
            PakInfo(uuid=UUID_X, name="Missing Mod", folder="Missing"),
            PakInfo(uuid=UUID_B.upper(), name="B", folder="B"),
            PakInfo(uuid=UUID_A, name="A", folder="A"),
        ]), encoding="utf-8")
        report = import_modsettings(pak_store, path)

        assert report.listed == 4
        assert report.enabled == [UUID_B]
        assert report.ghosts_created == [UUID_X]
        assert report.reordered
        assert _ids(pak_store) == [UUID_C, UUID_X, "loose", UUID_B, UUID_A]
        lib = pak_store.snapshot()
        assert lib.require(UUID_B).enabled
        assert lib.require(UUID_X).name == "Missing Mod"

    def test_import_unreadable(self, tmp_path, pak_store):
        path = tmp_path / "in.lsx"
        path.write_text("garbage", encoding="utf-8")
        with pytest.raises(ValueError):
            import_modsettings(pak_store, path)
