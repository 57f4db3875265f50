"""High-level API for bundlegen."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .building.pipeline import BundlePipeline, StoreBundlePipeline
from .building.writer import read_bundle, validate_bundle
from .config import ClientSettings
from .content.fetcher import Transport, HttpxTransport, fetch_entity_mappings
from .content.paths import ContentMapping
from .errors import ConversionError, ErrorCode, error_code_for
from .logging import get_logger
from .orchestrator import Converter
from .sink import ErrorSink, LoggingErrorSink
from .staging.importer import GltfImporter, ImporterCollaborator
from .state import ConversionState
from .store.artifacts import FileArtifactStore

__all__ = [
    "Environment",
    "ConversionResult",
    "convert",
    "resolve_mappings",
    "inspect_bundle",
]


@dataclass(slots=True)
class Environment:
    """Collaborators of a run; tests swap in fakes."""

    transport: Transport
    store: FileArtifactStore
    pipeline: BundlePipeline
    importer: ImporterCollaborator
    sink: ErrorSink

    @classmethod
    def create_default(cls, settings: ClientSettings) -> "Environment":
        store = FileArtifactStore(settings.downloads)
        return cls(
            transport=HttpxTransport(
                retries=settings.fetch_retries, timeout=settings.fetch_timeout
            ),
            store=store,
            pipeline=StoreBundlePipeline(store),
            importer=GltfImporter(),
            sink=LoggingErrorSink(
                hash=settings.target_hash,
                pointer=settings.target_pointer,
                platform=settings.build_target.value,
            ),
        )


@dataclass(slots=True)
class ConversionResult:
    state: ConversionState
    total: int = 0
    skipped: int = 0
    fetched: int = 0
    bundles: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def exit_code(self) -> int:
        return int(self.state.last_error_code)

    @property
    def ok(self) -> bool:
        return self.state.last_error_code in (
            ErrorCode.SUCCESS,
            ErrorCode.ALREADY_CONVERTED,
        )


def resolve_mappings(
    settings: ClientSettings, transport: Transport
) -> List[ContentMapping]:
    """Content mappings of the configured target entity (hash or pointer)."""
    if settings.target_hash:
        return fetch_entity_mappings(
            transport, settings.entities_endpoint, ids=[settings.target_hash]
        )
    if settings.target_pointer:
        return fetch_entity_mappings(
            transport, settings.entities_endpoint, pointers=[settings.target_pointer]
        )
    raise ConversionError(
        code=ErrorCode.SCENE_LIST_NULL, message="No target hash or pointer configured"
    )


def convert(
    settings: ClientSettings,
    mappings: Optional[Sequence[ContentMapping]] = None,
    environment: Optional[Environment] = None,
) -> ConversionResult:
    logger = get_logger()
    settings.validate()
    env = environment or Environment.create_default(settings)
    started = time.perf_counter()
    converter = Converter(
        settings,
        transport=env.transport,
        store=env.store,
        pipeline=env.pipeline,
        importer=env.importer,
        sink=env.sink,
    )
    if mappings is None:
        try:
            mappings = resolve_mappings(settings, env.transport)
        except ConversionError as exc:
            env.sink.report_exception(exc)
            env.sink.dispose()
            state = ConversionState()
            state.force_exit(error_code_for(exc))
            return ConversionResult(state=state)
    state = converter.convert(mappings)
    result = ConversionResult(
        state=state,
        total=converter.stats.total,
        skipped=converter.stats.skipped,
        fetched=converter.stats.fetched,
        bundles=list(converter.stats.bundles),
        timings=dict(converter.timers.elapsed),
        duration=time.perf_counter() - started,
    )
    logger.debug("conversion finished with %s", state.last_error_code.name)
    return result


def inspect_bundle(path: str | Path, *, payloads: bool = False) -> Dict[str, Any]:
    info = read_bundle(path, payloads=payloads)
    info["issues"] = validate_bundle(info)
    return info
