"""Per-bundle ``metadata.json`` generation.

The metadata lists the bundles a bundle depends on, in canonical hash casing,
so a runtime can load dependencies before the bundle itself. It is written
into the asset folder between the two build passes and therefore ships inside
the final bundle.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..config import VERSION, BuildTarget
from ..content.paths import CanonicalHashes
from ..identity import cid_to_guid
from ..logging import get_logger
from ..store.artifacts import FileArtifactStore, render_sidecar
from .pipeline import BuildManifest

__all__ = [
    "METADATA_FILENAME",
    "IGNORE_MARKER",
    "ArtifactMetadata",
    "dotnet_ticks",
    "strip_platform_suffix",
    "dependency_names",
    "MetadataWriter",
]

METADATA_FILENAME = "metadata.json"
IGNORE_MARKER = "_ignore"
PLATFORM_SUFFIXES = ("_windows", "_osx", "_mac", "_linux")

_DOTNET_EPOCH = datetime(1, 1, 1, tzinfo=timezone.utc)


def dotnet_ticks(moment: Optional[datetime] = None) -> int:
    """100 ns ticks since 0001-01-01, as a .NET ``DateTime.Ticks``."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _DOTNET_EPOCH) // timedelta(microseconds=1) * 10


def strip_platform_suffix(name: str) -> tuple[str, str]:
    """Split ``name`` into (base, suffix) for a known platform suffix."""
    lower = name.lower()
    for suffix in PLATFORM_SUFFIXES:
        if lower.endswith(suffix):
            return name[: -len(suffix)], name[-len(suffix):]
    return name, ""


@dataclass(slots=True)
class ArtifactMetadata:
    timestamp: int
    version: str = VERSION
    dependencies: List[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, text: str) -> "ArtifactMetadata":
        data = json.loads(text)
        return cls(
            timestamp=int(data["timestamp"]),
            version=str(data["version"]),
            dependencies=list(data.get("dependencies") or []),
        )


def dependency_names(
    manifest: BuildManifest, bundle: str, canonical: CanonicalHashes
) -> List[str]:
    """Transitive dependencies of ``bundle`` minus ignored ones, canonical casing."""
    out: List[str] = []
    for dep in manifest.all_dependencies(bundle):
        if IGNORE_MARKER in dep.lower():
            continue
        base, suffix = strip_platform_suffix(dep)
        out.append(canonical.canonical(base) + suffix)
    return out


class MetadataWriter:
    def __init__(
        self,
        store: FileArtifactStore,
        canonical: CanonicalHashes,
        target: BuildTarget,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.canonical = canonical
        self.target = target
        self.clock = clock

    def generate(self, manifest: BuildManifest) -> Dict[str, Path]:
        """Write ``metadata.json`` for every bundle whose asset folder is known."""
        logger = get_logger("build")
        written: Dict[str, Path] = {}
        for bundle in manifest.all_bundles():
            base, _ = strip_platform_suffix(bundle)
            folder_name = self.canonical.lookup(base)
            if folder_name is None:
                logger.debug("no asset folder for bundle %s", bundle)
                continue
            folder = self.store.root / folder_name
            if not folder.is_dir():
                continue
            meta = ArtifactMetadata(
                timestamp=dotnet_ticks(self.clock()),
                dependencies=dependency_names(manifest, bundle, self.canonical),
            )
            path = folder / METADATA_FILENAME
            path.write_text(meta.to_json(), encoding="utf-8")
            sidecar = self.store.get_sidecar_path_for(path)
            if self.store.load_at_path(path) is None and not sidecar.exists():
                # Deterministic identifier; never needs an eviction
                sidecar.write_text(
                    render_sidecar(
                        cid_to_guid(f"{folder_name}/{METADATA_FILENAME}"), None, []
                    ),
                    encoding="utf-8",
                )
            written[bundle] = path
        return written
