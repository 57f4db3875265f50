"""Error definitions and exit codes for bundlegen.

Exit codes are append-only: never renumber or remove a member, launchers and
queue consumers persist the numeric values.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum, auto
from typing import Any, Dict, Optional


class ErrorCode(IntEnum):
    SUCCESS = 0
    UNDEFINED = 1
    SCENE_LIST_NULL = 2
    ASSET_BUNDLE_BUILD_FAIL = 3
    VISUAL_TEST_FAILED = 4
    UNEXPECTED_ERROR = 5
    GLTFAST_CRITICAL_ERROR = 6
    GLTF_IMPORTER_NOT_FOUND = 7
    EMBED_MATERIAL_FAILURE = 8
    DOWNLOAD_FAILED = 9
    INVALID_PLATFORM = 10
    GLTF_PROCESS_MISMATCH = 11
    CONVERSION_ERRORS_TOLERATED = 12
    ALREADY_CONVERTED = 13


class Severity(Enum):
    SKIP_ASSET = auto()
    FATAL = auto()


@dataclass
class ConversionError(Exception):
    code: ErrorCode
    message: str
    context: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code.name}: {self.message}" + (
            f" | ctx={self.context}" if self.context else ""
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.name,
            "exit_code": int(self.code),
            "message": self.message,
            "context": self.context or {},
        }


class DownloadFailed(ConversionError):
    pass


class ImportFailure(ConversionError):
    pass


class GltfCriticalError(ImportFailure):
    pass


class GltfImporterNotFound(ImportFailure):
    pass


class EmbedMaterialFailure(ImportFailure):
    pass


class IdentityError(ConversionError):
    pass


class BundleBuildFailed(ConversionError):
    pass


class ConversionCancelled(ConversionError):
    pass


class ConfigurationError(ConversionError):
    pass


def download_failed(
    url: str, reason: str, context: Optional[Dict[str, Any]] = None
) -> DownloadFailed:
    ctx = {"url": url, **(context or {})}
    return DownloadFailed(
        code=ErrorCode.DOWNLOAD_FAILED,
        message=f"Download failed {url} -- {reason}",
        context=ctx,
    )


def unexpected_error(
    message: str, context: Optional[Dict[str, Any]] = None
) -> ConversionError:
    return ConversionError(
        code=ErrorCode.UNEXPECTED_ERROR, message=message, context=context
    )


def conversion_cancelled(stage: str) -> ConversionCancelled:
    return ConversionCancelled(
        code=ErrorCode.UNEXPECTED_ERROR,
        message=f"Conversion cancelled during {stage}",
        context={"stage": stage},
    )


def failure_policy(error: BaseException) -> Severity:
    """Classify a failure raised while processing a single asset.

    Import failures only cost the asset that raised them; everything else
    (transport, identity, build, configuration, unclassified exceptions)
    aborts the run.
    """
    if isinstance(error, ImportFailure):
        return Severity.SKIP_ASSET
    return Severity.FATAL


def error_code_for(error: BaseException) -> ErrorCode:
    if isinstance(error, ConversionError):
        return error.code
    return ErrorCode.UNEXPECTED_ERROR


__all__ = [
    "ErrorCode",
    "Severity",
    "ConversionError",
    "DownloadFailed",
    "ImportFailure",
    "GltfCriticalError",
    "GltfImporterNotFound",
    "EmbedMaterialFailure",
    "IdentityError",
    "BundleBuildFailed",
    "ConfigurationError",
    "ConversionCancelled",
    "download_failed",
    "unexpected_error",
    "conversion_cancelled",
    "failure_policy",
    "error_code_for",
]
