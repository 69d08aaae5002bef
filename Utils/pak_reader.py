"""
pak_reader.py
Read the file index and single files out of Baldur's Gate 3 .pak archives
(Larian LSPK v18), mainly to get at meta.lsx.

Only the header and the compressed file list are read up front, so opening
a multi-GB pak costs a few KB of I/O.

LSPK v18 header (40 bytes, little-endian):
    u32 signature "LSPK"   u32 version   u64 file_list_offset
    u32 file_list_size     u8 flags      u8 priority   16B md5   u16 num_parts

File list at file_list_offset:
    u32 num_files   u32 compressed_size   LZ4 block of num_files * 272 bytes

Each 272-byte entry:
    256B name (NUL-padded UTF-8)   u32 offset_low   u16 offset_high
    u8 archive_part   u8 flags (low nibble 0=none 1=zlib 2=lz4)
    u32 size_on_disk  u32 uncompressed_size
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from pathlib import Path

import lz4.block

LSPK_SIGNATURE = b"LSPK"
LSPK_VERSION = 18
HEADER_STRUCT = struct.Struct("<4sIQIBB16sH")
ENTRY_STRUCT = struct.Struct("<256sIHBBII")


class PakFormatError(ValueError):
    """The file is not a readable LSPK v18 archive."""


@dataclass(frozen=True)
class PakFile:
    name: str
    offset: int
    flags: int
    size_on_disk: int
    uncompressed_size: int
    archive_part: int = 0


def _decompress(data: bytes, flags: int, uncompressed_size: int) -> bytes:
    method = flags & 0x0F
    if method == 0:
        return data
    if method == 1:
        return zlib.decompress(data)
    if method == 2:
        return lz4.block.decompress(data, uncompressed_size=uncompressed_size)
    raise PakFormatError(f"Unknown LSPK compression method {method}")


def read_pak_index(pak_path: Path | str) -> list[PakFile]:
    """Return the list of files stored in a pak."""
    pak_path = Path(pak_path)
    with pak_path.open("rb") as f:
        header = f.read(HEADER_STRUCT.size)
        if len(header) < HEADER_STRUCT.size:
            raise PakFormatError(f"Too small to be an LSPK archive: {pak_path}")
        sig, version, list_offset, _list_size, _flags, _prio, _md5, _parts = \
            HEADER_STRUCT.unpack(header)
        if sig != LSPK_SIGNATURE:
            raise PakFormatError(f"Not an LSPK archive: {pak_path}")
        if version != LSPK_VERSION:
            raise PakFormatError(f"Unsupported LSPK version {version}: {pak_path}")

        f.seek(list_offset)
        head = f.read(8)
        if len(head) < 8:
            raise PakFormatError(f"Truncated file list: {pak_path}")
        num_files, compressed_size = struct.unpack("<II", head)
        try:
            table = lz4.block.decompress(
                f.read(compressed_size),
                uncompressed_size=num_files * ENTRY_STRUCT.size,
            )
        except lz4.block.LZ4BlockError as exc:
            raise PakFormatError(f"Corrupt file list in {pak_path}: {exc}") from exc

    files: list[PakFile] = []
    for i in range(num_files):
        raw_name, off_lo, off_hi, part, flags, on_disk, unc = \
            ENTRY_STRUCT.unpack_from(table, i * ENTRY_STRUCT.size)
        name = raw_name.split(b"\x00", 1)[0].decode("utf-8", errors="replace")
        files.append(PakFile(
            name=name.replace("\\", "/"),
            offset=off_lo | (off_hi << 32),
            flags=flags,
            size_on_disk=on_disk,
            uncompressed_size=unc,
            archive_part=part,
        ))
    return files


def read_pak_file(pak_path: Path | str, entry: PakFile) -> bytes:
    """Read and decompress one file from a pak."""
    with Path(pak_path).open("rb") as f:
        f.seek(entry.offset)
        raw = f.read(entry.size_on_disk)
    return _decompress(raw, entry.flags, entry.uncompressed_size)


def extract_meta_lsx(pak_path: Path | str) -> str | None:
    """Return the text of the pak's meta.lsx, or None if it has none.

    Prefers Mods/<Folder>/meta.lsx, the location the game itself reads.
    """
    candidates = [e for e in read_pak_index(pak_path)
                  if e.name.lower().rsplit("/", 1)[-1] == "meta.lsx"]
    if not candidates:
        return None
    candidates.sort(key=lambda e: (not e.name.lower().startswith("mods/"), e.name.count("/")))
    return read_pak_file(pak_path, candidates[0]).decode("utf-8-sig")
