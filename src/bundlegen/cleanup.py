"""Skip detection and post-build cleanup of the output folder."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterable, List, Sequence

from .config import LOG_FILENAME, ClientSettings
from .content.paths import AssetLocation, CanonicalHashes
from .building.metadata import strip_platform_suffix
from .building.pipeline import MANIFEST_SUFFIX
from .logging import get_logger

__all__ = ["SkipCleanupManager"]


class SkipCleanupManager:
    def __init__(self, settings: ClientSettings, canonical: CanonicalHashes) -> None:
        self.settings = settings
        self.canonical = canonical

    @property
    def output_root(self) -> Path:
        return self.settings.bundles

    def _built_path(self, hash_value: str) -> Path:
        name = self.canonical.canonical(hash_value)
        return self.output_root / (name + self.settings.build_target.platform_suffix)

    def should_skip(self, targets: Sequence[str]) -> bool:
        """True when every target already has its bundle in the output root."""
        if not self.settings.skip_already_built or not targets:
            return False
        return all(self._built_path(t).exists() for t in targets)

    def filter_existing(
        self, containers: Iterable[AssetLocation]
    ) -> tuple[List[AssetLocation], List[AssetLocation]]:
        """Split ``containers`` into (to convert, already built)."""
        keep: List[AssetLocation] = []
        skipped: List[AssetLocation] = []
        for loc in containers:
            if self.settings.skip_already_built and self._built_path(loc.hash).exists():
                skipped.append(loc)
            else:
                keep.append(loc)
        return keep, skipped

    def cleanup(self, bundle_names: Iterable[str]) -> List[Path]:
        """Rename bundles to canonical casing and drop their manifests."""
        logger = get_logger("cleanup")
        out = self.output_root
        (out / LOG_FILENAME).unlink(missing_ok=True)
        final: List[Path] = []
        for bundle in bundle_names:
            try:
                base, suffix = strip_platform_suffix(bundle)
                target = out / (self.canonical.canonical(base) + suffix)
                source = out / bundle
                if source.exists() and source != target:
                    os.replace(source, target)
                (out / (bundle + MANIFEST_SUFFIX)).unlink(missing_ok=True)
                final.append(target)
            except OSError as exc:
                logger.warning("Cleanup of bundle %s failed: %s", bundle, exc)
        return final

    def cleanup_working_folders(self) -> None:
        out = self.output_root
        root_name = out.name
        for p in (out / root_name, out / (root_name + MANIFEST_SUFFIX)):
            p.unlink(missing_ok=True)
        if not self.settings.keep_downloads:
            shutil.rmtree(self.settings.downloads, ignore_errors=True)
