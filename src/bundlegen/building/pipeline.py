"""Bundle build pipeline over the file artifact store."""

from __future__ import annotations

import hashlib
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntFlag
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

import yaml

from ..config import LOG_FILENAME, BuildTarget
from ..errors import conversion_cancelled
from ..logging import get_logger
from ..reporting import get_reporter
from ..store.artifacts import ArtifactRecord, FileArtifactStore
from .writer import BundleEntry, write_bundle

__all__ = ["BundleOptions", "BuildManifest", "BundlePipeline", "StoreBundlePipeline"]

MANIFEST_SUFFIX = ".manifest"


class BundleOptions(IntFlag):
    NONE = 0
    FORCE_REBUILD = 1
    UNCOMPRESSED = 2


@dataclass(slots=True)
class BuildManifest:
    """Bundle name -> direct dependency bundle names."""

    dependencies: Dict[str, List[str]] = field(default_factory=dict)
    assets: Dict[str, List[str]] = field(default_factory=dict)
    crcs: Dict[str, int] = field(default_factory=dict)

    def all_bundles(self) -> List[str]:
        return sorted(self.dependencies)

    def direct_dependencies(self, bundle: str) -> List[str]:
        return list(self.dependencies.get(bundle, []))

    def all_dependencies(self, bundle: str) -> List[str]:
        seen: Set[str] = set()
        stack = list(self.dependencies.get(bundle, []))
        while stack:
            dep = stack.pop()
            if dep in seen or dep == bundle:
                continue
            seen.add(dep)
            stack.extend(self.dependencies.get(dep, []))
        return sorted(seen)

    def __len__(self) -> int:
        return len(self.dependencies)


class BundlePipeline(ABC):
    @abstractmethod
    def build_bundles(
        self,
        output_dir: Path,
        options: BundleOptions,
        target: BuildTarget,
        *,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> Optional[BuildManifest]: ...


def _bundle_name(tag: str, target: BuildTarget) -> str:
    return tag.lower() + target.platform_suffix


class StoreBundlePipeline(BundlePipeline):
    def __init__(self, store: FileArtifactStore) -> None:
        self.store = store
        self.builds = 0
        self.written: List[str] = []

    def _members(
        self, target: BuildTarget
    ) -> tuple[Dict[str, List[ArtifactRecord]], Dict[str, Set[str]]]:
        store = self.store
        by_guid = {r.guid: r for r in store.artifacts()}
        explicit: Dict[str, List[ArtifactRecord]] = {}
        owner: Dict[str, str] = {}
        for rec in store.artifacts():
            tag = store.bundle_for(rec.path)
            if tag:
                name = _bundle_name(tag, target)
                explicit.setdefault(name, []).append(rec)
                owner[rec.guid] = name

        members: Dict[str, List[ArtifactRecord]] = {}
        deps: Dict[str, Set[str]] = {}
        for name, recs in explicit.items():
            included: Dict[str, ArtifactRecord] = {r.guid: r for r in recs}
            bundle_deps: Set[str] = set()
            stack = [ref for r in recs for ref in r.references]
            while stack:
                ref = stack.pop()
                rec = by_guid.get(ref)
                if rec is None or ref in included:
                    continue
                other = owner.get(ref)
                if other is not None:
                    if other != name:
                        bundle_deps.add(other)
                    continue
                # Untagged artifacts travel with the bundle that references them
                included[ref] = rec
                stack.extend(rec.references)
            members[name] = list(included.values())
            deps[name] = bundle_deps
        return members, deps

    def _entries(self, recs: Iterable[ArtifactRecord]) -> List[BundleEntry]:
        root = self.store.root
        out: List[BundleEntry] = []
        for rec in recs:
            try:
                rel = rec.path.relative_to(root).as_posix()
            except ValueError:
                rel = rec.path.name
            out.append(BundleEntry(rec.guid, rel, rec.path.read_bytes()))
        return out

    @staticmethod
    def _content_hash(
        entries: List[BundleEntry], deps: List[str], compressed: bool
    ) -> str:
        h = hashlib.md5()
        for e in sorted(entries, key=lambda e: (e.name, e.guid)):
            h.update(f"{e.guid}:{e.name}:{e.crc32:08x}:{len(e.data)};".encode("utf-8"))
        h.update(("|".join(deps) + f"|{int(compressed)}").encode("utf-8"))
        return h.hexdigest()

    @staticmethod
    def _previous_hash(manifest_path: Path) -> Optional[str]:
        if not manifest_path.exists():
            return None
        doc = yaml.safe_load(manifest_path.read_text(encoding="utf-8")) or {}
        return str((doc.get("Hashes") or {}).get("AssetFileHash") or "") or None

    def build_bundles(
        self,
        output_dir: Path,
        options: BundleOptions,
        target: BuildTarget,
        *,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> Optional[BuildManifest]:
        logger = get_logger("build")
        rep = get_reporter()
        started = time.perf_counter()
        self.builds += 1
        members, deps = self._members(target)
        if not members:
            logger.warning("No bundles tagged in %s", self.store.root)
            return None
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        compressed = not (options & BundleOptions.UNCOMPRESSED)
        manifest = BuildManifest()
        log_bundles: List[Dict[str, object]] = []
        for name in sorted(members):
            if cancelled is not None and cancelled():
                raise conversion_cancelled(f"bundle build ({name})")
            entries = self._entries(members[name])
            dep_list = sorted(deps[name])
            content_hash = self._content_hash(entries, dep_list, compressed)
            bundle_path = output_dir / name
            manifest_path = output_dir / (name + MANIFEST_SUFFIX)
            unchanged = (
                not (options & BundleOptions.FORCE_REBUILD)
                and bundle_path.exists()
                and self._previous_hash(manifest_path) == content_hash
            )
            if unchanged:
                crc = int(yaml.safe_load(manifest_path.read_text(encoding="utf-8"))["CRC"])
                logger.debug("bundle %s unchanged", name)
            else:
                crc = write_bundle(
                    bundle_path, name, entries, dep_list, compressed=compressed
                )
                self.written.append(name)
                manifest_path.write_text(
                    yaml.safe_dump(
                        {
                            "ManifestFileVersion": 0,
                            "CRC": crc,
                            "Hashes": {"AssetFileHash": content_hash},
                            "Assets": sorted(e.name for e in entries),
                            "Dependencies": [str(output_dir / d) for d in dep_list],
                        },
                        sort_keys=False,
                    ),
                    encoding="utf-8",
                )
            manifest.dependencies[name] = dep_list
            manifest.assets[name] = sorted(e.name for e in entries)
            manifest.crcs[name] = crc
            log_bundles.append(
                {"name": name, "crc": crc, "assets": len(entries), "rebuilt": not unchanged}
            )
            rep.advance("build", current_item=name)

        self._write_root_manifest(output_dir, manifest)
        (output_dir / LOG_FILENAME).write_text(
            json.dumps(
                {
                    "target": target.value,
                    "options": int(options),
                    "duration": round(time.perf_counter() - started, 3),
                    "bundles": log_bundles,
                },
                indent=2,
            ),
            encoding="utf-8",
        )
        return manifest

    @staticmethod
    def _write_root_manifest(output_dir: Path, manifest: BuildManifest) -> None:
        root_name = output_dir.name
        info = {
            name: {"Name": name, "Dependencies": manifest.direct_dependencies(name)}
            for name in manifest.all_bundles()
        }
        doc = yaml.safe_dump(
            {"ManifestFileVersion": 0, "AssetBundleManifest": {"AssetBundleInfos": info}},
            sort_keys=False,
        )
        (output_dir / root_name).write_text(doc, encoding="utf-8")
        (output_dir / (root_name + MANIFEST_SUFFIX)).write_text(doc, encoding="utf-8")
