"""Shared fixtures.

Every test runs against throwaway directories: the data root and config dir
are pointed into tmp_path, and the game handler is the real Baldur's Gate 3
one with its paths set to a fake install under tmp_path.
"""
from __future__ import annotations

import hashlib
import struct
from pathlib import Path

import lz4.block
import pytest

from Utils.content_cache import ContentCache
from Utils.library import FileEntry, ModEntry, PakInfo, TargetKind
from Utils.pak_reader import ENTRY_STRUCT, HEADER_STRUCT, LSPK_SIGNATURE, LSPK_VERSION
from Utils.settings import GameSettings


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    """Keep every test away from the real ~/.config and ~/.local/share."""
    monkeypatch.setenv("GARNET_DATA_DIR", str(tmp_path / "xdg-data"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.delenv("GARNET_GAMES_DIR", raising=False)


@pytest.fixture
def game_settings(tmp_path: Path) -> GameSettings:
    game_dir = tmp_path / "bg3"
    (game_dir / "bin").mkdir(parents=True)
    (game_dir / "Data").mkdir()
    return GameSettings(
        game_path=game_dir,
        mods_path=tmp_path / "prefix" / "Mods",
        modsettings_path=tmp_path / "prefix" / "PlayerProfiles" / "Public" / "modsettings.lsx",
        debounce_seconds=1.5,
    )


@pytest.fixture
def game(tmp_path: Path, game_settings: GameSettings):
    from Utils.game_loader import load_game
    return load_game("baldurs_gate_3", settings=game_settings,
                     settings_path=tmp_path / "xdg-config" / "settings.json")


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def cache(data_dir: Path) -> ContentCache:
    return ContentCache(data_dir / "cache")


# ---------------------------------------------------------------------------
# Mod builders
# ---------------------------------------------------------------------------

def _file_entry(output_path: str, digest: str, size: int) -> FileEntry:
    label, rel = output_path.split("/", 1)
    return FileEntry(TargetKind.from_label(label), rel, size, digest)


@pytest.fixture
def mkmod():
    """Build a ModEntry whose files carry fake digests (no cache involved).

    mkmod("A", "Data/x.txt", "Data/y.txt", deps=["B"])
    """
    def _make(mod_id: str, *paths: str, name: str | None = None, deps=(),
              enabled: bool = True, pak: bool = False, size: int = 10,
              added_at: int = 0) -> ModEntry:
        files = [
            _file_entry(p, hashlib.sha256(f"{mod_id}:{p}".encode()).hexdigest(), size)
            for p in paths
        ]
        return ModEntry(
            id=mod_id,
            name=name or mod_id,
            files=files,
            enabled=enabled,
            dependencies=list(deps),
            added_at=added_at,
            pak_info=PakInfo(uuid=mod_id, name=name or mod_id, folder=name or mod_id) if pak else None,
        )
    return _make


@pytest.fixture
def cached_mod(tmp_path: Path, cache: ContentCache):
    """Build a ModEntry whose files are really ingested into `cache`.

    cached_mod("A", {"Data/x.txt": b"from A"})
    """
    src_root = tmp_path / "src"

    def _make(mod_id: str, files: dict[str, bytes], **kwargs) -> ModEntry:
        entries: list[FileEntry] = []
        for output_path, content in files.items():
            src = src_root / mod_id / output_path
            src.parent.mkdir(parents=True, exist_ok=True)
            src.write_bytes(content)
            ce = cache.ingest(src, owner=mod_id)
            entries.append(_file_entry(output_path, ce.digest, ce.size))
        kwargs.setdefault("name", mod_id)
        return ModEntry(id=mod_id, files=entries, **kwargs)
    return _make


# ---------------------------------------------------------------------------
# Pak / meta.lsx builders
# ---------------------------------------------------------------------------

def meta_lsx(uuid: str, name: str, folder: str | None = None, deps=(),
             author: str = "tester") -> str:
    dep_nodes = "".join(
        f"""
            <node id="ModuleShortDesc">
              <attribute id="Folder" type="LSString" value="{d}"/>
              <attribute id="Name" type="LSString" value="{d}"/>
              <attribute id="UUID" type="FixedString" value="{d}"/>
              <attribute id="Version64" type="int64" value="36028797018963968"/>
            </node>"""
        for d in deps
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<save>
  <version major="4" minor="0" revision="9" build="331"/>
  <region id="Config">
    <node id="root">
      <children>
        <node id="Dependencies">
          <children>{dep_nodes}
          </children>
        </node>
        <node id="ModuleInfo">
          <attribute id="Author" type="LSString" value="{author}"/>
          <attribute id="Description" type="LSString" value="A test mod"/>
          <attribute id="Folder" type="LSString" value="{folder or name}"/>
          <attribute id="MD5" type="LSString" value=""/>
          <attribute id="Name" type="LSString" value="{name}"/>
          <attribute id="PublishHandle" type="uint64" value="0"/>
          <attribute id="UUID" type="FixedString" value="{uuid}"/>
          <attribute id="Version64" type="int64" value="36028797018963969"/>
          <children>
            <node id="PublishVersion">
              <attribute id="Version64" type="int64" value="36028797018963969"/>
            </node>
          </children>
        </node>
      </children>
    </node>
  </region>
</save>
"""


def write_pak(path: Path, files: dict[str, bytes], compress: bool = True) -> Path:
    """Write a minimal single-part LSPK v18 archive."""
    path.parent.mkdir(parents=True, exist_ok=True)
    body = bytearray()
    table = bytearray()
    offset = HEADER_STRUCT.size
    for name, data in files.items():
        stored = lz4.block.compress(data, store_size=False) if compress else data
        flags = 2 if compress else 0
        table += ENTRY_STRUCT.pack(
            name.encode("utf-8").ljust(256, b"\x00"),
            (offset + len(body)) & 0xFFFFFFFF, (offset + len(body)) >> 32,
            0, flags, len(stored), len(data),
        )
        body += stored
    packed_table = lz4.block.compress(bytes(table), store_size=False)
    list_offset = offset + len(body)
    file_list = struct.pack("<II", len(files), len(packed_table)) + packed_table
    header = HEADER_STRUCT.pack(LSPK_SIGNATURE, LSPK_VERSION, list_offset, len(file_list),
                                0, 0, b"\x00" * 16, 1)
    path.write_bytes(header + bytes(body) + file_list)
    return path


@pytest.fixture
def make_pak(tmp_path: Path):
    """make_pak("Cool.pak", uuid="...", name="Cool", deps=[...]) -> Path

    With uuid=None the pak has no meta.lsx (an override pak).
    """
    def _make(filename: str, uuid: str | None = None, name: str = "Mod",
              folder: str | None = None, deps=(), directory: Path | None = None,
              extra: dict[str, bytes] | None = None) -> Path:
        files: dict[str, bytes] = {}
        if uuid is not None:
            files[f"Mods/{folder or name}/meta.lsx"] = meta_lsx(uuid, name, folder, deps).encode()
        files.update(extra or {"Public/Shared/Stats/Generated/Data/Spell.txt": f"{name}".encode()})
        return write_pak((directory or tmp_path / "paks") / filename, files)
    return _make
