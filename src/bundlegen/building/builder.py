"""Two-pass dependency-aware build.

The dependency graph is only known after a build, but the metadata carrying
it has to be inside the bundles. ``discover`` builds once to learn the graph,
``write_metadata`` drops ``metadata.json`` into every asset folder and
``finalize`` rebuilds with the metadata included.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Optional

from ..config import BuildTarget
from ..content.paths import CanonicalHashes
from ..errors import BundleBuildFailed, ErrorCode, conversion_cancelled
from ..logging import get_logger
from ..store.artifacts import FileArtifactStore
from .metadata import MetadataWriter
from .pipeline import BuildManifest, BundleOptions, BundlePipeline

__all__ = ["DependencyAwareBuilder", "BUILD_OPTIONS"]

BUILD_OPTIONS = BundleOptions.FORCE_REBUILD | BundleOptions.UNCOMPRESSED


class DependencyAwareBuilder:
    def __init__(
        self,
        store: FileArtifactStore,
        pipeline: BundlePipeline,
        canonical: CanonicalHashes,
        output_dir: Path,
        target: BuildTarget,
        metadata: Optional[MetadataWriter] = None,
        cancelled: Callable[[], bool] = lambda: False,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.output_dir = Path(output_dir)
        self.target = target
        self.metadata = metadata or MetadataWriter(store, canonical, target)
        self.cancelled = cancelled
        self.metadata_files: Dict[str, Path] = {}

    def _check_cancelled(self, stage: str) -> None:
        if self.cancelled():
            raise conversion_cancelled(stage)

    def _run_pass(self, label: str) -> BuildManifest:
        self._check_cancelled(f"{label} pass")
        manifest = self.pipeline.build_bundles(
            self.output_dir, BUILD_OPTIONS, self.target, cancelled=self.cancelled
        )
        if manifest is None or len(manifest) == 0:
            raise BundleBuildFailed(
                code=ErrorCode.ASSET_BUNDLE_BUILD_FAIL,
                message=f"Bundle build ({label}) produced no manifest",
                context={"output": str(self.output_dir), "target": self.target.value},
            )
        get_logger("build").debug(
            "%s pass produced %d bundles", label, len(manifest)
        )
        return manifest

    def discover(self) -> BuildManifest:
        return self._run_pass("discover")

    def write_metadata(self, manifest: BuildManifest) -> Dict[str, Path]:
        self.metadata_files = self.metadata.generate(manifest)
        return self.metadata_files

    def finalize(self) -> BuildManifest:
        return self._run_pass("finalize")

    def build(self) -> BuildManifest:
        manifest = self.discover()
        self.write_metadata(manifest)
        self._check_cancelled("metadata")
        self.store.refresh()
        self.store.save_all()
        return self.finalize()
