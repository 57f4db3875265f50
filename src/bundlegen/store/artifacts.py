"""File-system artifact store.

Every artifact under the store root has a ``<artifact>.meta`` sidecar holding
its identifier, its bundle tag and the identifiers it references. The store
keeps an in-memory registry that only changes on :meth:`FileArtifactStore.refresh`,
so a sidecar rewritten on disk does not change a registered identifier until
the artifact is evicted (deleted through the store and re-imported).

All mutations must happen on the thread that created the store.
"""

from __future__ import annotations

import os
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import yaml

from ..logging import get_logger

__all__ = [
    "SIDECAR_SUFFIX",
    "ArtifactRecord",
    "FileArtifactStore",
    "read_sidecar",
    "render_sidecar",
]

SIDECAR_SUFFIX = ".meta"
_SIDECAR_FORMAT = "2"


@dataclass(slots=True)
class ArtifactRecord:
    path: Path
    guid: str
    bundle: Optional[str] = None
    references: List[str] = field(default_factory=list)
    dirty: bool = False

    @property
    def is_folder(self) -> bool:
        return self.path.is_dir()


def render_sidecar(guid: str, bundle: Optional[str], references: List[str]) -> str:
    lines = [
        f"fileFormatVersion: {_SIDECAR_FORMAT}",
        f"guid: {guid}",
        f"bundleName: {bundle or ''}",
        "references:",
    ]
    lines.extend(f"- {r}" for r in references)
    return "\n".join(lines) + "\n"


def read_sidecar(path: Path) -> Dict[str, object]:
    """Parse a sidecar; every scalar stays a string."""
    data = yaml.load(path.read_text(encoding="utf-8"), Loader=yaml.BaseLoader)
    if not isinstance(data, dict):
        return {}
    return data


def _norm(path: str | os.PathLike[str]) -> Path:
    return Path(os.path.normpath(os.path.abspath(path)))


class FileArtifactStore:
    def __init__(self, root: str | Path) -> None:
        self.root = _norm(root)
        self._owner = threading.get_ident()
        self._records: Dict[Path, ArtifactRecord] = {}
        self._by_guid: Dict[str, Path] = {}
        self.refresh_count = 0

    # ------------------------------------------------------------------ utils
    def _check_owner(self) -> None:
        if threading.get_ident() != self._owner:
            raise RuntimeError(
                "FileArtifactStore accessed from a thread other than its owner"
            )

    def get_sidecar_path_for(self, path: str | Path) -> Path:
        p = _norm(path)
        return p.with_name(p.name + SIDECAR_SUFFIX)

    def _iter_files(self) -> Iterator[Path]:
        if not self.root.exists():
            return
        for p in sorted(self.root.rglob("*")):
            rel = p.relative_to(self.root)
            if any(part.startswith(".") for part in rel.parts):
                continue
            if p.name.endswith(SIDECAR_SUFFIX):
                continue
            if p.is_file():
                yield _norm(p)

    def _register(self, path: Path) -> ArtifactRecord:
        sidecar = self.get_sidecar_path_for(path)
        guid = ""
        bundle: Optional[str] = None
        refs: List[str] = []
        dirty = False
        if sidecar.exists():
            data = read_sidecar(sidecar)
            guid = str(data.get("guid") or "")
            bundle = str(data.get("bundleName") or "") or None
            raw_refs = data.get("references") or []
            refs = [str(r) for r in raw_refs] if isinstance(raw_refs, list) else []
        if not guid or guid in self._by_guid:
            if guid:
                get_logger("store").warning(
                    "Identifier %s of %s already registered; assigning a new one",
                    guid,
                    path,
                )
            guid = uuid.uuid4().hex
            dirty = True
        rec = ArtifactRecord(path, guid, bundle, refs, dirty)
        self._records[path] = rec
        self._by_guid[guid] = path
        if dirty:
            self._write_sidecar(rec)
        return rec

    def _unregister(self, path: Path) -> None:
        rec = self._records.pop(path, None)
        if rec is not None:
            self._by_guid.pop(rec.guid, None)

    def _write_sidecar(self, rec: ArtifactRecord) -> None:
        sidecar = self.get_sidecar_path_for(rec.path)
        sidecar.parent.mkdir(parents=True, exist_ok=True)
        sidecar.write_text(
            render_sidecar(rec.guid, rec.bundle, rec.references), encoding="utf-8"
        )
        rec.dirty = False

    # --------------------------------------------------------------- database
    def refresh(self) -> None:
        """Synchronize the registry with the file system."""
        self._check_owner()
        self.refresh_count += 1
        present = set(self._iter_files())
        for path in [p for p, r in self._records.items() if not r.is_folder]:
            if path not in present:
                self._unregister(path)
        for path in sorted(present):
            if path not in self._records:
                self._register(path)
        if not self.root.exists():
            return
        for sidecar in sorted(self.root.rglob("*" + SIDECAR_SUFFIX)):
            target = _norm(sidecar.with_name(sidecar.name[: -len(SIDECAR_SUFFIX)]))
            if not target.exists():
                # Orphan of a deleted artifact
                sidecar.unlink()
            elif target.is_dir() and target not in self._records:
                self._register(target)

    def save_all(self) -> None:
        self._check_owner()
        for rec in self._records.values():
            if rec.dirty:
                self._write_sidecar(rec)

    def import_at_path(self, path: str | Path) -> ArtifactRecord:
        self._check_owner()
        p = _norm(path)
        if not p.exists():
            raise FileNotFoundError(p)
        rec = self._records.get(p)
        if rec is None:
            rec = self._register(p)
        return rec

    def load_at_path(self, path: str | Path) -> Optional[ArtifactRecord]:
        return self._records.get(_norm(path))

    def delete_at_path(self, path: str | Path) -> bool:
        self._check_owner()
        p = _norm(path)
        existed = p.exists()
        self._unregister(p)
        if p.is_dir():
            shutil.rmtree(p)
        elif existed:
            p.unlink()
        sidecar = self.get_sidecar_path_for(p)
        if sidecar.exists():
            sidecar.unlink()
        return existed

    def move_asset(self, src: str | Path, dst: str | Path) -> ArtifactRecord:
        self._check_owner()
        s, d = _norm(src), _norm(dst)
        rec = self._records.pop(s, None)
        d.parent.mkdir(parents=True, exist_ok=True)
        os.replace(s, d)
        s_side, d_side = self.get_sidecar_path_for(s), self.get_sidecar_path_for(d)
        if s_side.exists():
            os.replace(s_side, d_side)
        if rec is None:
            return self._register(d)
        rec.path = d
        self._records[d] = rec
        self._by_guid[rec.guid] = d
        return rec

    # ----------------------------------------------------------------- tagging
    def tag_bundle(self, path: str | Path, bundle: Optional[str]) -> None:
        """Assign ``bundle`` to a file or folder (``None`` clears the tag)."""
        self._check_owner()
        p = _norm(path)
        rec = self._records.get(p)
        if rec is None:
            rec = self.import_at_path(p)
        rec.bundle = bundle or None
        rec.dirty = True

    def bundle_for(self, path: str | Path) -> Optional[str]:
        """Explicit tag of ``path`` or of its nearest tagged ancestor folder."""
        p = _norm(path)
        rec = self._records.get(p)
        if rec is not None and rec.bundle:
            return rec.bundle
        for parent in p.parents:
            if parent != self.root and self.root not in parent.parents:
                break
            rec = self._records.get(parent)
            if rec is not None and rec.bundle:
                return rec.bundle
            if parent == self.root:
                break
        return None

    def set_references(self, path: str | Path, references: List[str]) -> None:
        self._check_owner()
        rec = self.import_at_path(path)
        refs = [r for r in dict.fromkeys(references) if r and r != rec.guid]
        if refs != rec.references:
            rec.references = refs
            rec.dirty = True

    # ----------------------------------------------------------------- lookup
    def guid_for(self, path: str | Path) -> Optional[str]:
        rec = self._records.get(_norm(path))
        return rec.guid if rec else None

    def path_for_guid(self, guid: str) -> Optional[Path]:
        return self._by_guid.get(guid)

    def artifacts(self) -> List[ArtifactRecord]:
        return [r for r in self._records.values() if not r.is_folder]

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, os.PathLike)):
            return False
        return _norm(path) in self._records

    def __len__(self) -> int:
        return len(self.artifacts())
