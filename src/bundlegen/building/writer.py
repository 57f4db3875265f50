"""Binary bundle writer and reader.

Layout (little endian)::

    header      <8sHH16sII>  magic, version, flags, bundle id, entries, deps
    deps        per dependency: u16 length + utf-8 name
    entries     per entry: 16s guid, Q offset, Q stored, Q raw, I crc32,
                H name length + utf-8 name
    data        each payload aligned to DATA_ALIGNMENT
    footer      <I8s>  crc32 of all preceding bytes, end magic
"""

from __future__ import annotations

import hashlib
import struct
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Sequence

__all__ = [
    "MAGIC",
    "FOOTER_MAGIC",
    "FORMAT_VERSION",
    "FLAG_COMPRESSED",
    "BundleEntry",
    "write_bundle",
    "read_bundle",
    "validate_bundle",
]

MAGIC = b"BNDLGEN\x00"
FOOTER_MAGIC = b"BGBNDEND"
FORMAT_VERSION = 1
FLAG_COMPRESSED = 0x1
DATA_ALIGNMENT = 16

_HEADER = struct.Struct("<8sHH16sII")
_ENTRY_FIXED = struct.Struct("<16sQQQI")
_FOOTER = struct.Struct("<I8s")


@dataclass(slots=True)
class BundleEntry:
    guid: str
    name: str
    data: bytes
    crc32: int = field(init=False)

    def __post_init__(self) -> None:
        self.crc32 = zlib.crc32(self.data) & 0xFFFFFFFF


def _guid_bytes(guid: str) -> bytes:
    try:
        raw = bytes.fromhex(guid)
    except ValueError:
        raw = hashlib.md5(guid.encode("utf-8")).digest()
    return raw[:16].ljust(16, b"\x00")


def _pad_to(f: BinaryIO, target_offset: int) -> None:
    pos = f.tell()
    if pos > target_offset:
        raise RuntimeError(f"Writer position {pos} surpassed offset {target_offset}")
    if pos < target_offset:
        f.write(b"\x00" * (target_offset - pos))


def _align(value: int, alignment: int = DATA_ALIGNMENT) -> int:
    return (value + alignment - 1) // alignment * alignment


def _encode_name(name: str) -> bytes:
    raw = name.encode("utf-8")
    if len(raw) > 0xFFFF:
        raise ValueError(f"Name too long: {name[:32]}...")
    return struct.pack("<H", len(raw)) + raw


def write_bundle(
    path: Path,
    name: str,
    entries: Sequence[BundleEntry],
    dependencies: Sequence[str],
    *,
    compressed: bool = True,
) -> int:
    """Write a bundle file; returns its footer crc32."""
    ordered = sorted(entries, key=lambda e: (e.name, e.guid))
    payloads = [zlib.compress(e.data, 9) if compressed else e.data for e in ordered]
    dep_table = b"".join(_encode_name(d) for d in dependencies)
    entry_table_size = sum(
        _ENTRY_FIXED.size + 2 + len(e.name.encode("utf-8")) for e in ordered
    )
    offset = _align(_HEADER.size + len(dep_table) + entry_table_size)
    offsets: List[int] = []
    for payload in payloads:
        offsets.append(offset)
        offset = _align(offset + len(payload))

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        f.write(
            _HEADER.pack(
                MAGIC,
                FORMAT_VERSION,
                FLAG_COMPRESSED if compressed else 0,
                hashlib.md5(name.encode("utf-8")).digest(),
                len(ordered),
                len(dependencies),
            )
        )
        f.write(dep_table)
        for entry, payload, off in zip(ordered, payloads, offsets):
            f.write(
                _ENTRY_FIXED.pack(
                    _guid_bytes(entry.guid),
                    off,
                    len(payload),
                    len(entry.data),
                    entry.crc32,
                )
            )
            f.write(_encode_name(entry.name))
        for payload, off in zip(payloads, offsets):
            _pad_to(f, off)
            f.write(payload)
        _pad_to(f, _align(f.tell()))
    return _append_footer(path)


def _append_footer(path: Path) -> int:
    data = path.read_bytes()
    crc = zlib.crc32(data) & 0xFFFFFFFF
    with path.open("ab") as f:
        f.write(_FOOTER.pack(crc, FOOTER_MAGIC))
    return crc


def _read_exact(data: bytes, offset: int, size: int, label: str) -> bytes:
    end = offset + size
    if end > len(data):
        raise ValueError(
            f"Out of range read for {label}: {offset}+{size}>{len(data)}"
        )
    return data[offset:end]


def _read_name(data: bytes, offset: int, label: str) -> tuple[str, int]:
    (length,) = struct.unpack("<H", _read_exact(data, offset, 2, label))
    raw = _read_exact(data, offset + 2, length, label)
    return raw.decode("utf-8"), offset + 2 + length


def read_bundle(path: str | Path, *, payloads: bool = False) -> Dict[str, Any]:
    """Parse a bundle file into a dict; raises ``ValueError`` if malformed."""
    data = Path(path).read_bytes()
    magic, version, flags, bundle_id, count, dep_count = _HEADER.unpack(
        _read_exact(data, 0, _HEADER.size, "header")
    )
    if magic != MAGIC:
        raise ValueError("Header magic mismatch")
    off = _HEADER.size
    deps: List[str] = []
    for i in range(dep_count):
        dep, off = _read_name(data, off, f"dep[{i}]")
        deps.append(dep)
    entries: List[Dict[str, Any]] = []
    compressed = bool(flags & FLAG_COMPRESSED)
    for i in range(count):
        guid, d_off, stored, raw_size, crc = _ENTRY_FIXED.unpack(
            _read_exact(data, off, _ENTRY_FIXED.size, f"entry[{i}]")
        )
        name, off = _read_name(data, off + _ENTRY_FIXED.size, f"entry[{i}].name")
        entry: Dict[str, Any] = {
            "guid": guid.hex(),
            "name": name,
            "offset": d_off,
            "stored_size": stored,
            "size": raw_size,
            "crc32": crc,
        }
        if payloads:
            blob = _read_exact(data, d_off, stored, f"entry[{i}].data")
            entry["data"] = zlib.decompress(blob) if compressed else blob
        entries.append(entry)
    footer_off = len(data) - _FOOTER.size
    crc, end_magic = _FOOTER.unpack(_read_exact(data, footer_off, _FOOTER.size, "footer"))
    return {
        "file_size": len(data),
        "version": version,
        "compressed": compressed,
        "bundle_id": bundle_id.hex(),
        "dependencies": deps,
        "entries": entries,
        "crc32": crc,
        "crc_match": crc == (zlib.crc32(data[:footer_off]) & 0xFFFFFFFF),
        "footer_magic_ok": end_magic == FOOTER_MAGIC,
    }


def validate_bundle(info: Dict[str, Any]) -> List[str]:
    issues: List[str] = []
    if not info["footer_magic_ok"]:
        issues.append("Footer magic mismatch")
    if not info["crc_match"]:
        issues.append("CRC mismatch")
    if info["version"] != FORMAT_VERSION:
        issues.append(f"Unsupported format version {info['version']}")
    for e in info["entries"]:
        if "data" in e and (zlib.crc32(e["data"]) & 0xFFFFFFFF) != e["crc32"]:
            issues.append(f"Entry CRC mismatch: {e['name']}")
    return issues
