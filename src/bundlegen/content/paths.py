"""Content-addressed path resolution.

A :class:`ContentMapping` ties a logical file name (as referenced by other
assets) to the hash of its content. Resolution places every hash in its own
asset folder: ``<root>/<hash>/<hash><ext>``.
"""

from __future__ import annotations

import os
import posixpath
import re
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..config import BUFFER_EXTENSIONS, CONTAINER_EXTENSIONS, TEXTURE_EXTENSIONS

__all__ = [
    "AssetKind",
    "ContentMapping",
    "AssetLocation",
    "CanonicalHashes",
    "normalize_logical_path",
    "resolve",
    "locations_for",
    "content_table",
    "nicify_name",
    "kind_for",
]


class AssetKind(Enum):
    CONTAINER = auto()
    TEXTURE = auto()
    RAW_BUFFER = auto()
    UNKNOWN = auto()


def kind_for(file_name: str) -> AssetKind:
    lower = file_name.lower()
    if lower.endswith(CONTAINER_EXTENSIONS):
        return AssetKind.CONTAINER
    if lower.endswith(TEXTURE_EXTENSIONS):
        return AssetKind.TEXTURE
    if lower.endswith(BUFFER_EXTENSIONS):
        return AssetKind.RAW_BUFFER
    return AssetKind.UNKNOWN


def normalize_logical_path(path: str) -> str:
    """Slash-normalize a logical path independently of the host platform."""
    p = path.replace("\\", "/")
    p = re.sub(r"/{2,}", "/", p)
    while p.startswith("./"):
        p = p[2:]
    p = p.lstrip("/")
    if not p:
        return p
    return posixpath.normpath(p)


@dataclass(frozen=True, slots=True)
class ContentMapping:
    hash: str
    logical_path: str

    def __post_init__(self) -> None:
        if not self.hash:
            raise ValueError("content mapping requires a hash")
        object.__setattr__(
            self, "logical_path", normalize_logical_path(self.logical_path)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContentMapping":
        # Entity payloads name the logical path "file"
        return cls(hash=str(data["hash"]), logical_path=str(data["file"]))

    def to_dict(self) -> Dict[str, str]:
        return {"file": self.logical_path, "hash": self.hash}


@dataclass(frozen=True, slots=True)
class AssetLocation:
    root: Path
    mapping: ContentMapping
    kind: AssetKind = field(default=AssetKind.UNKNOWN)

    @property
    def hash(self) -> str:
        return self.mapping.hash

    @property
    def logical_path(self) -> str:
        return self.mapping.logical_path

    @property
    def extension(self) -> str:
        return PurePosixPath(self.mapping.logical_path).suffix

    @property
    def asset_folder(self) -> Path:
        return self.root / self.hash

    @property
    def final_path(self) -> Path:
        return self.asset_folder / f"{self.hash}{self.extension}"

    @property
    def hashed_path(self) -> str:
        return f"/{self.hash}{self.extension}"

    @property
    def file_path(self) -> str:
        return f"/{self.logical_path}"

    def __str__(self) -> str:
        return f"hash:{self.hash} - file:{self.logical_path}"


def resolve(base_path: str | Path, mapping: ContentMapping) -> AssetLocation:
    return AssetLocation(
        # Same anchoring as FileArtifactStore.root
        root=Path(os.path.normpath(os.path.abspath(base_path))),
        mapping=mapping,
        kind=kind_for(mapping.logical_path),
    )


class CanonicalHashes:
    """Lower-cased hash -> first-seen original casing."""

    def __init__(self) -> None:
        self._table: Dict[str, str] = {}

    @classmethod
    def from_mappings(cls, mappings: Iterable[ContentMapping]) -> "CanonicalHashes":
        table = cls()
        for m in mappings:
            table.add(m.hash)
        return table

    def add(self, hash_value: str) -> str:
        return self._table.setdefault(hash_value.lower(), hash_value)

    def lookup(self, name: str) -> Optional[str]:
        return self._table.get(name.lower())

    def canonical(self, name: str) -> str:
        return self._table.get(name.lower(), name)

    def clear(self) -> None:
        self._table.clear()

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._table

    def as_dict(self) -> Dict[str, str]:
        return dict(self._table)


def locations_for(
    base_path: str | Path,
    mappings: Iterable[ContentMapping],
    extensions: Sequence[str],
) -> List[AssetLocation]:
    """Locations for mappings whose logical path ends in one of ``extensions``.

    Duplicate ``(hash, file)`` pairs collapse to a single location; the same
    hash under different names stays separate.
    """
    exts = tuple(e.lower() for e in extensions)
    seen: Dict[tuple[str, str], AssetLocation] = {}
    for m in mappings:
        if not m.logical_path.lower().endswith(exts):
            continue
        key = (m.hash, m.logical_path)
        if key not in seen:
            seen[key] = resolve(base_path, m)
    return list(seen.values())


def content_table(
    locations: Iterable[AssetLocation], *, by_hash: bool = False
) -> Dict[str, Path]:
    """Lower-cased ``/logical/path`` -> final path.

    Containers are already renamed to their hash, so they are keyed by
    ``/hash.ext`` when ``by_hash`` is set.
    """
    table: Dict[str, Path] = {}
    for loc in locations:
        key = loc.hashed_path if by_hash else loc.file_path
        table[key.lower()] = loc.final_path
    return table


_INVALID_NAME_CHARS = set('<>:"/\\|?*\x00') | {chr(c) for c in range(32)}
_EXTRA_REPLACED = set(" .?¿:*|")


def nicify_name(name: str) -> str:
    out = "".join(
        "_" if (ch in _INVALID_NAME_CHARS or ch in _EXTRA_REPLACED) else ch
        for ch in name
    )
    return out or "unnamed"
