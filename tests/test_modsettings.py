from __future__ import annotations

import pytest

from conftest import meta_lsx, write_pak
from Utils.library import Library, PakInfo
from Utils.modsettings import (
    GUSTAV_DEV_UUID, build_modsettings_xml, parse_meta_lsx, read_modsettings,
    resolve_load_order, write_modsettings,
)
from Utils.pak_reader import PakFormatError, extract_meta_lsx, read_pak_index

UUID_A = "aaaaaaaa-0000-0000-0000-000000000001"
UUID_B = "bbbbbbbb-0000-0000-0000-000000000002"


class TestMetaLsx:
    def test_parse(self):
        info, deps = parse_meta_lsx(meta_lsx(UUID_A, "Alpha", deps=[UUID_B, GUSTAV_DEV_UUID]))
        assert info.uuid == UUID_A
        assert info.name == "Alpha"
        assert info.folder == "Alpha"
        assert info.author == "tester"
        assert info.version64 == "36028797018963969"
        assert deps == [UUID_B]

    def test_parse_garbage(self):
        assert parse_meta_lsx("<save><broken") is None
        assert parse_meta_lsx("<save/>") is None


class TestPakReader:
    def test_index_and_meta(self, tmp_path):
        pak = write_pak(tmp_path / "a.pak", {
            "Public/Alpha/Stats/x.txt": b"stats",
            "Mods/Alpha/meta.lsx": meta_lsx(UUID_A, "Alpha").encode(),
        })
        names = [f.name for f in read_pak_index(pak)]
        assert names == ["Public/Alpha/Stats/x.txt", "Mods/Alpha/meta.lsx"]
        assert UUID_A in extract_meta_lsx(pak)

    def test_uncompressed_entries(self, tmp_path):
        pak = write_pak(tmp_path / "a.pak", {"Mods/A/meta.lsx": b"<save/>"}, compress=False)
        assert extract_meta_lsx(pak) == "<save/>"

    def test_no_meta(self, tmp_path):
        pak = write_pak(tmp_path / "a.pak", {"Public/x.txt": b"x"})
        assert extract_meta_lsx(pak) is None

    def test_not_a_pak(self, tmp_path):
        path = tmp_path / "fake.pak"
        path.write_bytes(b"PK\x03\x04" + b"\x00" * 64)
        with pytest.raises(PakFormatError):
            read_pak_index(path)


class TestLoadOrder:
    def test_dependencies_first(self, mkmod):
        a = mkmod("A", deps=["B"], pak=True)
        b = mkmod("B", pak=True)
        c = mkmod("C", pak=True)
        assert [m.id for m in resolve_load_order([a, c, b])] == ["B", "A", "C"]

    def test_cycles_terminate(self, mkmod):
        a = mkmod("A", deps=["B"], pak=True)
        b = mkmod("B", deps=["A"], pak=True)
        assert sorted(m.id for m in resolve_load_order([a, b])) == ["A", "B"]

    def test_write_and_read_back(self, tmp_path, mkmod):
        lib = Library(entries=[
            mkmod(UUID_A, deps=[UUID_B], pak=True),
            mkmod(UUID_B, pak=True),
            mkmod("loose", "Data/x.txt"),
            mkmod("off", pak=True, enabled=False),
        ])
        path = tmp_path / "modsettings.lsx"
        assert write_modsettings(path, lib) == 2
        assert [i.uuid for i in read_modsettings(path)] == [GUSTAV_DEV_UUID, UUID_B, UUID_A]

    def test_escapes_attribute_values(self):
        text = build_modsettings_xml([PakInfo(uuid=UUID_A, name="Tom & Jerry's \"Mod\"", folder="TJ")])
        assert "Tom &amp; Jerry's &quot;Mod&quot;" in text

    def test_read_legacy_mod_order(self, tmp_path):
        path = tmp_path / "modsettings.lsx"
        path.write_text(f"""<?xml version="1.0" encoding="UTF-8"?>
<save>
  <region id="ModuleSettings">
    <node id="root">
      <children>
        <node id="ModOrder">
          <children>
            <node id="Module"><attribute id="UUID" type="FixedString" value="{UUID_B}"/></node>
            <node id="Module"><attribute id="UUID" type="FixedString" value="{UUID_A}"/></node>
          </children>
        </node>
        <node id="Mods">
          <children>
            <node id="ModuleShortDesc">
              <attribute id="Name" type="LSString" value="Alpha"/>
              <attribute id="UUID" type="FixedString" value="{UUID_A}"/>
            </node>
            <node id="ModuleShortDesc">
              <attribute id="Name" type="LSString" value="Beta"/>
              <attribute id="UUID" type="FixedString" value="{UUID_B}"/>
            </node>
          </children>
        </node>
      </children>
    </node>
  </region>
</save>
""", encoding="utf-8")
        assert [i.name for i in read_modsettings(path)] == ["Beta", "Alpha"]

    def test_read_invalid(self, tmp_path):
        path = tmp_path / "modsettings.lsx"
        path.write_text("not xml", encoding="utf-8")
        with pytest.raises(ValueError):
            read_modsettings(path)
