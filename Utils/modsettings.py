"""
modsettings.py
Read and write modsettings.lsx, Baldur's Gate 3's load-order file.

Writing (after every deploy):
  1. Take the enabled mods that carry pak metadata (PakInfo), in stack order.
  2. Order them so every dependency appears before the mods that need it;
     the stack order is kept wherever dependencies allow.
  3. Write the Patch 7+ layout (Mods node only) atomically.

The GustavDev base-game entry is always written first and never removed.

Reading is used by interop import and by meta.lsx parsing during import.
Older files that still carry a ModOrder node are read in ModOrder order.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from xml.sax.saxutils import quoteattr

from Utils.library import Library, ModEntry, PakInfo

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GUSTAV_DEV_UUID = "28ac9ce2-2aba-8cda-b3b5-6e922f71b6b8"

# UUIDs for base-game / engine modules.  Dependencies on these are never
# reported as missing and they are never written as mods.
SYSTEM_UUIDS: frozenset[str] = frozenset({
    # Core engine / story modules
    GUSTAV_DEV_UUID,                          # GustavDev
    "991c9c7a-fb80-40cb-8f0d-b92d4e80e9b1",   # Gustav
    "cb555efe-2d9e-131f-8195-a89329d218ea",   # GustavX
    "ed539163-bb70-431b-96a7-f5b2eda5376b",   # Shared
    "3d0c5ff8-c95d-c907-ff3e-34b204f1c630",   # SharedDev
    "b77b6210-ac50-4cb1-a3d5-5702fb9c744c",   # Honour
    "767d0062-d82c-279c-e16b-dfee7fe94cdd",   # HonourX
    # DLC dice sets
    "e842840a-2449-588c-b0c4-22122cfce31b",   # DiceSet_01
    "b176a0ac-d79f-ed9d-5a87-5c2c80874e10",   # DiceSet_02
    "e0a4d990-7b9b-8fa9-d7c6-04017c6cf5b1",   # DiceSet_03
    "77a2155f-4b35-4f0c-e7ff-4338f91426a4",   # DiceSet_04
    "6efc8f44-cc2a-0273-d4b1-681d3faa411b",   # DiceSet_05
    "ee4989eb-aab8-968f-8674-812ea2f4bfd7",   # DiceSet_06
    "bf19bab4-4908-ef39-9065-ced469c0f877",   # DiceSet_07
    # UI / feature modules
    "630daa32-70f8-3da5-41b9-154fe8410236",   # MainUI
    "ee5a55ff-eb38-0b27-c5b0-f358dc306d34",   # ModBrowser
    "55ef175c-59e3-b44b-3fb2-8f86acc5d550",   # PhotoMode
    "e1ce736b-52e6-e713-e9e7-e6abbb15a198",   # CrossplayUI
})

GUSTAV_DEV = PakInfo(
    uuid=GUSTAV_DEV_UUID,
    name="GustavDev",
    folder="GustavDev",
    version64="36028797018963968",
)

_MODSETTINGS_HEADER = """\
<?xml version="1.0" encoding="UTF-8"?>
<save>
  <version major="4" minor="7" revision="1" build="3"/>
  <region id="ModuleSettings">
    <node id="root">
      <children>
        <node id="Mods">
          <children>
"""

_MODSETTINGS_FOOTER = """\
          </children>
        </node>
      </children>
    </node>
  </region>
</save>
"""

_MOD_ENTRY_TEMPLATE = """\
            <node id="ModuleShortDesc">
              <attribute id="Folder" type="LSString" value={folder}/>
              <attribute id="MD5" type="LSString" value={md5}/>
              <attribute id="Name" type="LSString" value={name}/>
              <attribute id="PublishHandle" type="uint64" value={publish_handle}/>
              <attribute id="UUID" type="guid" value={uuid}/>
              <attribute id="Version64" type="int64" value={version64}/>
            </node>
"""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _attr(node: ET.Element, attr_id: str) -> str:
    """Value of a direct <attribute id="attr_id" value="X"/> child, or ""."""
    for attr in node.findall("attribute"):
        if attr.get("id") == attr_id:
            return attr.get("value", "")
    return ""


def _short_desc(node: ET.Element) -> PakInfo | None:
    uuid = _attr(node, "UUID")
    if not uuid:
        return None
    return PakInfo(
        uuid=uuid,
        name=_attr(node, "Name"),
        folder=_attr(node, "Folder"),
        version64=_attr(node, "Version64") or _attr(node, "Version") or GUSTAV_DEV.version64,
        md5=_attr(node, "MD5"),
        publish_handle=_attr(node, "PublishHandle") or "0",
    )


def _find_node(root: ET.Element, node_id: str) -> ET.Element | None:
    for node in root.iter("node"):
        if node.get("id") == node_id:
            return node
    return None


def parse_meta_lsx(xml_text: str) -> tuple[PakInfo, list[str]] | None:
    """Parse meta.lsx text into (PakInfo, dependency uuids), or None if unusable.

    Dependencies on base-game modules are dropped here already.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        log.debug("meta.lsx parse error: %s", exc)
        return None

    module_info = _find_node(root, "ModuleInfo")
    if module_info is None:
        return None
    info = _short_desc(module_info)
    if info is None:
        return None
    info.author = _attr(module_info, "Author")
    info.description = _attr(module_info, "Description")

    deps: list[str] = []
    dependencies = _find_node(root, "Dependencies")
    if dependencies is not None:
        for child in dependencies.iter("node"):
            if child.get("id") != "ModuleShortDesc":
                continue
            dep_uuid = _attr(child, "UUID")
            if dep_uuid and dep_uuid not in SYSTEM_UUIDS and dep_uuid not in deps:
                deps.append(dep_uuid)
    return info, deps


def read_modsettings(path: Path) -> list[PakInfo]:
    """Return the modules listed in a modsettings.lsx, in load order.

    Raises ValueError if the file is not parseable XML.
    """
    try:
        root = ET.fromstring(path.read_text(encoding="utf-8-sig"))
    except ET.ParseError as exc:
        raise ValueError(f"{path} is not a valid modsettings.lsx: {exc}") from exc

    mods_node = _find_node(root, "Mods")
    descs: dict[str, PakInfo] = {}
    listed: list[str] = []
    if mods_node is not None:
        for node in mods_node.iter("node"):
            if node.get("id") == "ModuleShortDesc":
                info = _short_desc(node)
                if info is not None and info.uuid not in descs:
                    descs[info.uuid] = info
                    listed.append(info.uuid)

    order_node = _find_node(root, "ModOrder")
    if order_node is not None:
        ordered = []
        for node in order_node.iter("node"):
            if node.get("id") == "Module":
                uuid = _attr(node, "UUID")
                if uuid and uuid not in ordered:
                    ordered.append(uuid)
        if ordered:
            listed = ordered + [u for u in listed if u not in ordered]
    return [descs.get(u) or PakInfo(uuid=u, name="") for u in listed]


# ---------------------------------------------------------------------------
# Dependency-aware ordering
# ---------------------------------------------------------------------------

def resolve_load_order(mods: list[ModEntry]) -> list[ModEntry]:
    """Return mods in dependency-correct load order.

    mods is in stack order.  For each mod we first insert its (present)
    dependencies, recursively, then the mod itself; a visited set prevents
    duplicates and stops cycles.
    """
    by_id = {m.id: m for m in mods}
    added: set[str] = set()
    visiting: set[str] = set()
    result: list[ModEntry] = []

    def _insert(mod: ModEntry) -> None:
        if mod.id in added or mod.id in visiting:
            return
        visiting.add(mod.id)
        for dep_id in mod.dependencies:
            dep = by_id.get(dep_id)
            if dep is not None:
                _insert(dep)
        visiting.discard(mod.id)
        added.add(mod.id)
        result.append(mod)

    for mod in mods:
        _insert(mod)
    return result


def pak_mods_for_modsettings(library: Library) -> list[ModEntry]:
    """Enabled mods that have module metadata, in stack order."""
    return [
        m for m in library.enabled_mods()
        if m.pak_info is not None and m.pak_info.uuid not in SYSTEM_UUIDS
    ]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def _format_entry(info: PakInfo) -> str:
    return _MOD_ENTRY_TEMPLATE.format(
        folder=quoteattr(info.folder),
        md5=quoteattr(info.md5),
        name=quoteattr(info.name),
        publish_handle=quoteattr(info.publish_handle or "0"),
        uuid=quoteattr(info.uuid),
        version64=quoteattr(info.version64 or GUSTAV_DEV.version64),
    )


def build_modsettings_xml(ordered: list[PakInfo]) -> str:
    """Build the full modsettings.lsx text: GustavDev, then ordered."""
    parts = [_MODSETTINGS_HEADER, _format_entry(GUSTAV_DEV)]
    parts.extend(_format_entry(info) for info in ordered if info.uuid != GUSTAV_DEV_UUID)
    parts.append(_MODSETTINGS_FOOTER)
    return "".join(parts)


def write_text_atomic(path: Path, text: str) -> None:
    """Write text via a temp file + rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(path)
    except OSError:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise


def write_modsettings(modsettings_path: Path, library: Library, log_fn=None) -> int:
    """Write modsettings.lsx for the enabled pak mods of library.

    Returns the number of mod entries written (excluding GustavDev).
    """
    _log = log_fn or (lambda _: None)
    ordered = resolve_load_order(pak_mods_for_modsettings(library))
    write_text_atomic(modsettings_path, build_modsettings_xml([m.pak_info for m in ordered]))
    if ordered:
        _log(f"  Load order: {', '.join(m.name for m in ordered)}")
    _log(f"Wrote modsettings.lsx with {len(ordered)} mod(s).")
    return len(ordered)
