"""Client settings and constants for a conversion run."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Tuple

import yaml

from .errors import ConfigurationError, ErrorCode

__all__ = [
    "ShaderKind",
    "BuildTarget",
    "ClientSettings",
    "load_settings",
    "VERSION",
    "LOG_FILENAME",
    "BUFFER_EXTENSIONS",
    "CONTAINER_EXTENSIONS",
    "TEXTURE_EXTENSIONS",
]

VERSION = "3.0"
LOG_FILENAME = "buildlogtep.json"
ASSET_BUNDLE_FOLDER_NAME = "AssetBundles"
DOWNLOADED_FOLDER_NAME = "_Downloaded"
SHADERS_FOLDER_NAME = "Shaders"
MAX_TEXTURE_SIZE = 512

BUFFER_EXTENSIONS: Tuple[str, ...] = (".bin",)
CONTAINER_EXTENSIONS: Tuple[str, ...] = (".glb", ".gltf")
TEXTURE_EXTENSIONS: Tuple[str, ...] = (
    ".jpg",
    ".png",
    ".jpeg",
    ".tga",
    ".gif",
    ".bmp",
    ".psd",
    ".tiff",
    ".iff",
    ".ktx",
)


class ShaderKind(str, Enum):
    DCL = "dcl"
    GLTFAST = "gltfast"

    @property
    def shader_name(self) -> str:
        if self is ShaderKind.GLTFAST:
            return "glTF/PbrMetallicRoughness"
        return "DCL/Scene"


class BuildTarget(str, Enum):
    WEBGL = "webgl"
    WINDOWS = "windows"
    OSX = "osx"
    LINUX = "linux"

    @property
    def platform_suffix(self) -> str:
        # WebGL bundles carry no suffix
        return {
            BuildTarget.WEBGL: "",
            BuildTarget.WINDOWS: "_windows",
            BuildTarget.OSX: "_osx",
            BuildTarget.LINUX: "_linux",
        }[self]

    @classmethod
    def parse(cls, value: "str | BuildTarget") -> "BuildTarget":
        if isinstance(value, BuildTarget):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                code=ErrorCode.INVALID_PLATFORM,
                message=f"Invalid build target '{value}'",
                context={"valid": [t.value for t in cls]},
            ) from None


@dataclass(slots=True)
class ClientSettings:
    # Working area; downloads and bundles default to folders below it
    work_root: Path = field(default_factory=lambda: Path("work"))
    download_root: Optional[Path] = None
    output_root: Optional[Path] = None
    base_url: str = "https://peer.decentraland.org/content/contents/"
    entities_url: Optional[str] = None
    target_hash: Optional[str] = None
    target_pointer: Optional[Tuple[int, int]] = None
    import_only_entity: Optional[str] = None
    shader: ShaderKind = ShaderKind.DCL
    build_target: BuildTarget = BuildTarget.WEBGL
    strip_shaders: bool = True
    import_gltf: bool = True
    create_bundles: bool = True
    skip_already_built: bool = False
    clear_directories_on_start: bool = False
    keep_downloads: bool = True
    max_texture_size: int = MAX_TEXTURE_SIZE
    # 0 means one worker per fetch in the batch
    fetch_concurrency: int = 0
    fetch_retries: int = 5
    fetch_timeout: float = 60.0
    report_errors: bool = False
    verbose: bool = False

    @property
    def downloads(self) -> Path:
        if self.download_root is not None:
            return Path(self.download_root)
        return Path(self.work_root) / DOWNLOADED_FOLDER_NAME

    @property
    def bundles(self) -> Path:
        if self.output_root is not None:
            return Path(self.output_root)
        return Path(self.work_root) / ASSET_BUNDLE_FOLDER_NAME

    @property
    def entities_endpoint(self) -> str:
        if self.entities_url:
            return self.entities_url
        base = self.base_url if self.base_url.endswith("/") else self.base_url + "/"
        return base + "entities/active"

    def validate(self) -> "ClientSettings":
        self.build_target = BuildTarget.parse(self.build_target)
        try:
            self.shader = ShaderKind(self.shader)
        except ValueError:
            raise ConfigurationError(
                code=ErrorCode.UNEXPECTED_ERROR,
                message=f"Unknown shader kind '{self.shader}'",
            ) from None
        if self.max_texture_size <= 0:
            raise ConfigurationError(
                code=ErrorCode.UNEXPECTED_ERROR,
                message="max_texture_size must be positive",
            )
        if self.fetch_concurrency < 0 or self.fetch_retries < 1:
            raise ConfigurationError(
                code=ErrorCode.UNEXPECTED_ERROR,
                message="fetch_concurrency must be >= 0 and fetch_retries >= 1",
            )
        return self

    def clone(self, **changes: Any) -> "ClientSettings":
        return replace(self, **changes)


_PATH_FIELDS = {"work_root", "download_root", "output_root"}


def load_settings(path: str | Path, **overrides: Any) -> ClientSettings:
    """Load settings from a YAML or JSON file; keyword overrides win."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        data: Any = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ConfigurationError(
            code=ErrorCode.UNEXPECTED_ERROR,
            message="Root of settings file must be an object",
        )
    data.update({k: v for k, v in overrides.items() if v is not None})
    known = {f.name for f in fields(ClientSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(
            code=ErrorCode.UNEXPECTED_ERROR,
            message=f"Unknown settings: {', '.join(unknown)}",
        )
    for key in _PATH_FIELDS & set(data):
        if data[key] is not None:
            data[key] = Path(data[key])
    if data.get("target_pointer") is not None:
        data["target_pointer"] = tuple(int(v) for v in data["target_pointer"])
    return ClientSettings(**data).validate()
