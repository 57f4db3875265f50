"""Conversion orchestrator.

Drives a run through IDLE -> FETCHING -> BUILDING -> FINISHED. Everything that
touches the artifact store happens on the calling thread; only fetches run on
a pool.
"""

from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .building.builder import DependencyAwareBuilder
from .building.pipeline import BuildManifest, BundlePipeline, StoreBundlePipeline
from .cleanup import SkipCleanupManager
from .config import (
    BUFFER_EXTENSIONS,
    CONTAINER_EXTENSIONS,
    TEXTURE_EXTENSIONS,
    ClientSettings,
)
from .content.fetcher import FetchedBlobTable, Fetcher, Transport, HttpxTransport
from .content.paths import (
    AssetKind,
    AssetLocation,
    CanonicalHashes,
    ContentMapping,
    content_table,
    locations_for,
)
from .errors import (
    ConversionCancelled,
    ConversionError,
    ErrorCode,
    Severity,
    error_code_for,
    failure_policy,
)
from .identity import IdentityNormalizer
from .logging import get_logger, section
from .reporting import get_reporter, task
from .sink import ErrorSink, LoggingErrorSink
from .staging.importer import ImporterCollaborator
from .staging.stager import ImportStager, StagedArtifact
from .state import ConversionState, StageTimers, Step
from .store.artifacts import FileArtifactStore

__all__ = ["Converter", "RunStats"]


def _logger():
    return get_logger("convert")


@dataclass(slots=True)
class RunStats:
    total: int = 0
    skipped: int = 0
    fetched: int = 0
    staged: int = 0
    bundles: List[str] = field(default_factory=list)
    bytes_fetched: int = 0


class _ForcedExit(Exception):
    """Unwinds a run after ``force_exit`` recorded the terminal code."""


class Converter:
    def __init__(
        self,
        settings: ClientSettings,
        *,
        transport: Optional[Transport] = None,
        store: Optional[FileArtifactStore] = None,
        pipeline: Optional[BundlePipeline] = None,
        importer: Optional[ImporterCollaborator] = None,
        sink: Optional[ErrorSink] = None,
    ) -> None:
        self.settings = settings.validate()
        self.transport = transport or HttpxTransport(
            retries=settings.fetch_retries, timeout=settings.fetch_timeout
        )
        self.store = store or FileArtifactStore(settings.downloads)
        self.pipeline = pipeline or StoreBundlePipeline(self.store)
        self.sink = sink or LoggingErrorSink(
            hash=settings.target_hash,
            pointer=settings.target_pointer,
            platform=settings.build_target.value,
        )
        self.fetcher = Fetcher(self.transport, settings.fetch_concurrency)
        self.stager = ImportStager(self.store, settings, importer)
        self.normalizer = IdentityNormalizer(self.store)
        self.state = ConversionState()
        self.timers = StageTimers()
        self.stats = RunStats()
        self.blobs = FetchedBlobTable()
        self.canonical = CanonicalHashes()
        self.manifest: Optional[BuildManifest] = None
        self.on_finish: List[Callable[[ConversionState], None]] = []
        self._cancel = threading.Event()
        self._finished_once = False
        self._staged: set[AssetLocation] = set()

    # ------------------------------------------------------------ cancellation
    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _check_cancelled(self) -> None:
        if self.cancelled:
            _logger().warning("Conversion cancelled")
            self._force_exit(ErrorCode.UNEXPECTED_ERROR)

    def _force_exit(self, code: ErrorCode) -> None:
        self.state.force_exit(code)
        raise _ForcedExit()

    # -------------------------------------------------------------------- run
    def convert(self, mappings: Sequence[ContentMapping]) -> ConversionState:
        try:
            self._run(list(mappings))
        except _ForcedExit:
            pass
        except ConversionCancelled as exc:
            _logger().warning("Conversion cancelled: %s", exc.message)
            self.state.force_exit(exc.code)
        except Exception as exc:
            self.sink.report_exception(exc, stage=self.state.step.name)
            self.state.force_exit(error_code_for(exc))
        finally:
            self._finish()
        return self.state

    def _init_directories(self) -> None:
        s = self.settings
        if s.clear_directories_on_start:
            for folder in (s.downloads, s.bundles):
                shutil.rmtree(folder, ignore_errors=True)
        for folder in (s.downloads, s.bundles):
            Path(folder).mkdir(parents=True, exist_ok=True)
        self.store.refresh()

    def _run(self, mappings: List[ContentMapping]) -> None:
        logger = _logger()
        s = self.settings
        if not mappings:
            self.sink.report_error(ErrorCode.SCENE_LIST_NULL, "No content mappings")
            self._force_exit(ErrorCode.SCENE_LIST_NULL)
        self._init_directories()
        self.canonical = CanonicalHashes.from_mappings(mappings)

        self.state.advance(Step.FETCHING)
        root = s.downloads
        textures = locations_for(root, mappings, TEXTURE_EXTENSIONS)
        buffers = locations_for(root, mappings, BUFFER_EXTENSIONS)
        containers = locations_for(root, mappings, CONTAINER_EXTENSIONS)
        if s.import_only_entity:
            wanted = s.import_only_entity.lower()
            containers = [c for c in containers if c.hash.lower() == wanted]
        self.stats.total = len(containers)

        skip = SkipCleanupManager(s, self.canonical)
        targets = [c.hash for c in containers]
        if skip.should_skip(targets):
            logger.info("All %d containers already converted", len(targets))
            self.stats.skipped = len(targets)
            self._force_exit(ErrorCode.ALREADY_CONVERTED)
        containers, already = skip.filter_existing(containers)
        self.stats.skipped += len(already)
        if already:
            logger.info("Skipping %d already converted containers", len(already))

        # Textures and buffers staged earlier are re-imported without a fetch
        pending = [
            loc
            for loc in (*textures, *buffers)
            if not loc.final_path.exists()
        ] + list(containers)
        self._fetch(pending)

        stager = self.stager
        stager.content_map = {
            **content_table((*textures, *buffers)),
            **content_table(containers, by_hash=True),
        }
        with self.timers.timed("import"), task(
            "import", "Import assets", len(textures) + len(buffers) + len(containers)
        ) as final:
            for loc in (*textures, *buffers):
                self._stage_one(loc.kind, loc)
            for loc in containers:
                self._stage_one(AssetKind.CONTAINER, loc)
            final["staged"] = self.stats.staged
            final["skipped"] = self.stats.skipped
        get_reporter().status(
            f"Import summary: staged={self.stats.staged} skipped={self.stats.skipped} "
            f"total={self.stats.total}"
        )

        for loc in (*textures, *containers):
            self._check_cancelled()
            if loc in self._staged:
                self.store.tag_bundle(loc.asset_folder, loc.hash)
        self.store.refresh()
        self.store.save_all()

        if not s.create_bundles:
            logger.info("Bundle creation disabled; stopping after import")
            self.state.last_error_code = ErrorCode.SUCCESS
            self.state.advance(Step.FINISHED)
            return

        self.state.advance(Step.BUILDING)
        self._check_cancelled()
        with section("Building"), self.timers.timed("build"), task(
            "build", "Build bundles"
        ) as final:
            builder = DependencyAwareBuilder(
                self.store,
                self.pipeline,
                self.canonical,
                s.bundles,
                s.build_target,
                cancelled=lambda: self.cancelled,
            )
            self.manifest = builder.build()
            final["bundles"] = len(self.manifest)
        get_reporter().status(
            f"Build summary: bundles={len(self.manifest)} "
            f"metadata={len(builder.metadata_files)}"
        )
        with self.timers.timed("cleanup"):
            produced = skip.cleanup(self.manifest.all_bundles())
        self.stats.bundles = [p.name for p in produced]
        get_reporter().status(
            f"Cleanup summary: bundles={len(produced)} "
            f"failed={len(self.manifest) - len(produced)}"
        )
        self.state.last_error_code = ErrorCode.SUCCESS
        self.state.advance(Step.FINISHED)

    def _fetch(self, pending: List[AssetLocation]) -> None:
        logger = _logger()
        with section("Fetching"), self.timers.timed("fetch"), task(
            "fetch", "Fetch content", len(pending)
        ) as final:
            outcomes = self.fetcher.fetch_all(
                pending, self.settings.base_url, self.blobs, lambda: self.cancelled
            )
            failed = [o for o in outcomes if o.error is not None]
            self.stats.fetched = sum(1 for o in outcomes if o.ok)
            self.stats.bytes_fetched = sum(len(o.data or b"") for o in outcomes)
            final["fetched"] = self.stats.fetched
            final["bytes"] = self.stats.bytes_fetched
        get_reporter().status(
            f"Fetch summary: requested={len(pending)} fetched={self.stats.fetched} "
            f"failed={len(failed)} bytes={self.stats.bytes_fetched}"
        )
        for outcome in failed:
            self.sink.report_exception(outcome.error)  # type: ignore[arg-type]
        if failed:
            logger.error("%d download(s) failed", len(failed))
            self._force_exit(ErrorCode.DOWNLOAD_FAILED)
        self._check_cancelled()

    def _stage_one(self, kind: AssetKind, loc: AssetLocation) -> Optional[StagedArtifact]:
        self._check_cancelled()
        blob = self.blobs.pop(loc)
        try:
            staged = self.stager.stage(kind, blob, loc)
            self.normalizer.normalize(loc)
        except ConversionError as exc:
            if failure_policy(exc) is Severity.SKIP_ASSET:
                self.sink.report_exception(exc, file=loc.logical_path)
                if kind is AssetKind.CONTAINER:
                    self.stats.skipped += 1
                self.state.last_error_code = ErrorCode.CONVERSION_ERRORS_TOLERATED
                _logger().warning("Skipped %s: %s", loc, exc.message)
                return None
            self.sink.report_exception(exc, file=loc.logical_path)
            self._force_exit(exc.code)
        self.stats.staged += 1
        self._staged.add(loc)
        return staged

    # ----------------------------------------------------------------- finish
    def _finish(self) -> None:
        if self._finished_once:
            return
        self._finished_once = True
        if not self.state.finished:
            self.state.force_exit(self.state.last_error_code)
        total = self.stats.total
        converted = max(0, total - self.stats.skipped)
        per_asset = self.timers.total() / total if total else 0.0
        get_reporter().status(
            f"Conversion summary: converted={converted} total={total} "
            f"skipped={self.stats.skipped} code={self.state.last_error_code.name} "
            f"{self.timers.describe()} per_asset={per_asset:.2f}s".rstrip()
        )
        self.sink.dispose()
        self.blobs.clear()
        self.canonical.clear()
        try:
            SkipCleanupManager(self.settings, self.canonical).cleanup_working_folders()
        except OSError as exc:
            _logger().warning("Working folder cleanup failed: %s", exc)
        for callback in self.on_finish:
            callback(self.state)
