"""Container importer collaborator built on ``pygltflib``.

The stager only talks to :class:`ImporterCollaborator`; :class:`GltfImporter`
decodes glTF/GLB containers, resolves their images (GLB binary chunk, data
URIs, or external files through the run's content table) and exposes the
material definitions.
"""

from __future__ import annotations

import base64
import posixpath
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Mapping, Optional

from pygltflib import GLTF2

from ..config import CONTAINER_EXTENSIONS, ClientSettings, ShaderKind
from ..content.paths import nicify_name, normalize_logical_path
from ..errors import ErrorCode, GltfCriticalError
from ..logging import get_logger

__all__ = [
    "ImporterCollaborator",
    "GltfImporter",
    "ImportedContainer",
    "TextureSource",
    "MaterialSource",
    "TEXTURE_SLOTS",
]

GLB_MAGIC = b"glTF"

# Material slot name -> accessor on a pygltflib Material
TEXTURE_SLOTS = ("baseColor", "metallicRoughness", "normal", "occlusion", "emissive")


@dataclass(slots=True)
class TextureSource:
    index: int
    name: str
    data: Optional[bytes] = None
    # Final path of an external image resolved through the content table
    external: Optional[Path] = None
    uri: Optional[str] = None

    @property
    def embedded(self) -> bool:
        return self.data is not None


@dataclass(slots=True)
class MaterialSource:
    index: int
    name: str
    base_color_factor: List[float] = field(default_factory=lambda: [1.0, 1.0, 1.0, 1.0])
    metallic_factor: float = 1.0
    roughness_factor: float = 1.0
    emissive_factor: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    alpha_mode: str = "OPAQUE"
    alpha_cutoff: Optional[float] = None
    double_sided: bool = False
    # slot -> glTF texture index
    slots: Dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ImportedContainer:
    path: Path
    gltf: Any
    binary_blob: Optional[bytes] = None
    buffers: Dict[int, Optional[bytes]] = field(default_factory=dict)
    external_paths: List[Path] = field(default_factory=list)


class ImporterCollaborator(ABC):
    @abstractmethod
    def configure(
        self,
        path: Path,
        content_map: Mapping[str, Path],
        root_path: str,
        hash_value: str,
        shader_kind: ShaderKind,
    ) -> bool: ...

    @abstractmethod
    def load(self, url: str | Path, settings: ClientSettings) -> ImportedContainer: ...

    @abstractmethod
    def textures(self, container: ImportedContainer) -> List[TextureSource]: ...

    @abstractmethod
    def materials(self, container: ImportedContainer) -> List[MaterialSource]: ...


def _decode_data_uri(uri: str) -> Optional[bytes]:
    if not uri.startswith("data:"):
        return None
    header, _, payload = uri.partition(",")
    if header.endswith(";base64"):
        return base64.b64decode(payload)
    return urllib.parse.unquote_to_bytes(payload)


class GltfImporter(ImporterCollaborator):
    def __init__(self) -> None:
        self.path: Optional[Path] = None
        self.content_map: Mapping[str, Path] = {}
        self.root_path = ""
        self.hash = ""
        self.shader_kind = ShaderKind.DCL

    def configure(
        self,
        path: Path,
        content_map: Mapping[str, Path],
        root_path: str,
        hash_value: str,
        shader_kind: ShaderKind,
    ) -> bool:
        if Path(path).suffix.lower() not in CONTAINER_EXTENSIONS:
            return False
        self.path = Path(path)
        self.content_map = content_map
        self.root_path = normalize_logical_path(root_path)
        self.hash = hash_value
        self.shader_kind = shader_kind
        return True

    # ---------------------------------------------------------------- loading
    def _critical(self, message: str) -> GltfCriticalError:
        return GltfCriticalError(
            code=ErrorCode.GLTFAST_CRITICAL_ERROR,
            message=message,
            context={"hash": self.hash, "path": str(self.path)},
        )

    def resolve_uri(self, uri: str) -> Optional[Path]:
        """Final path of a relative container URI, or ``None``."""
        rel = urllib.parse.unquote(uri)
        joined = posixpath.join(self.root_path, rel) if self.root_path else rel
        key = "/" + normalize_logical_path(joined)
        return self.content_map.get(key.lower())

    def load(self, url: str | Path, settings: ClientSettings) -> ImportedContainer:
        path = Path(url)
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise self._critical(f"Cannot read container {path}: {exc}") from exc
        if not raw:
            raise self._critical(f"Empty container {path}")
        if path.suffix.lower() == ".glb" and raw[:4] != GLB_MAGIC:
            raise self._critical(f"Not a GLB container {path}")
        try:
            gltf = GLTF2.load(str(path))
        except Exception as exc:
            raise self._critical(f"Failed to parse {path}: {exc}") from exc
        if gltf is None:
            raise self._critical(f"Failed to parse {path}")
        self._check_indices(gltf)
        container = ImportedContainer(path=path, gltf=gltf)
        container.binary_blob = gltf.binary_blob()
        for i, buf in enumerate(gltf.buffers or []):
            container.buffers[i] = self._buffer_bytes(container, i, buf)
        return container

    def _check_indices(self, gltf: Any) -> None:
        """Reject cross references that point outside their arrays."""

        def _in_range(index: Any, items: Any) -> bool:
            return isinstance(index, int) and 0 <= index < len(items or [])

        for i, view in enumerate(gltf.bufferViews or []):
            if not _in_range(view.buffer, gltf.buffers):
                raise self._critical(f"bufferView {i} references missing buffer {view.buffer}")
        for i, image in enumerate(gltf.images or []):
            if image.bufferView is not None and not _in_range(
                image.bufferView, gltf.bufferViews
            ):
                raise self._critical(
                    f"image {i} references missing bufferView {image.bufferView}"
                )
        for i, tex in enumerate(gltf.textures or []):
            if tex.source is not None and not _in_range(tex.source, gltf.images):
                raise self._critical(f"texture {i} references missing image {tex.source}")

    def _buffer_bytes(
        self, container: ImportedContainer, index: int, buf: Any
    ) -> Optional[bytes]:
        uri = getattr(buf, "uri", None)
        if not uri:
            return container.binary_blob if index == 0 else None
        data = _decode_data_uri(uri)
        if data is not None:
            return data
        resolved = self.resolve_uri(uri)
        if resolved is None or not resolved.exists():
            get_logger("import").warning(
                "Buffer '%s' of %s not found in content table", uri, self.hash
            )
            return None
        container.external_paths.append(resolved)
        return resolved.read_bytes()

    # --------------------------------------------------------------- textures
    def textures(self, container: ImportedContainer) -> List[TextureSource]:
        gltf = container.gltf
        images = gltf.images or []
        used: set[str] = set()
        out: List[TextureSource] = []
        for i, tex in enumerate(gltf.textures or []):
            source = tex.source
            if source is None or source >= len(images):
                out.append(TextureSource(i, f"Texture_{i}"))
                continue
            image = images[source]
            base = image.name or tex.name
            if not base and image.uri and not image.uri.startswith("data:"):
                base = PurePosixPath(urllib.parse.unquote(image.uri)).stem
            base = base or f"Texture_{source}"
            # Extracted files are named after the nicified name
            name, n = base, 0
            while nicify_name(name).lower() in used:
                n += 1
                name = f"{base}_{n}"
            used.add(nicify_name(name).lower())
            out.append(self._texture_source(container, i, name, image))
        return out

    def _texture_source(
        self, container: ImportedContainer, index: int, name: str, image: Any
    ) -> TextureSource:
        src = TextureSource(index, name, uri=image.uri)
        if image.bufferView is not None:
            bv = container.gltf.bufferViews[image.bufferView]
            data = container.buffers.get(bv.buffer)
            if data is not None:
                start = bv.byteOffset or 0
                src.data = data[start : start + bv.byteLength]
            return src
        if image.uri:
            data = _decode_data_uri(image.uri)
            if data is not None:
                src.data = data
                return src
            src.external = self.resolve_uri(image.uri)
            if src.external is not None:
                container.external_paths.append(src.external)
        return src

    # -------------------------------------------------------------- materials
    def materials(self, container: ImportedContainer) -> List[MaterialSource]:
        out: List[MaterialSource] = []
        for i, mat in enumerate(container.gltf.materials or []):
            m = MaterialSource(index=i, name=mat.name or f"Material_{i}")
            pbr = mat.pbrMetallicRoughness
            if pbr is not None:
                if pbr.baseColorFactor is not None:
                    m.base_color_factor = list(pbr.baseColorFactor)
                if pbr.metallicFactor is not None:
                    m.metallic_factor = float(pbr.metallicFactor)
                if pbr.roughnessFactor is not None:
                    m.roughness_factor = float(pbr.roughnessFactor)
                if pbr.baseColorTexture is not None:
                    m.slots["baseColor"] = pbr.baseColorTexture.index
                if pbr.metallicRoughnessTexture is not None:
                    m.slots["metallicRoughness"] = pbr.metallicRoughnessTexture.index
            if mat.normalTexture is not None:
                m.slots["normal"] = mat.normalTexture.index
            if mat.occlusionTexture is not None:
                m.slots["occlusion"] = mat.occlusionTexture.index
            if mat.emissiveTexture is not None:
                m.slots["emissive"] = mat.emissiveTexture.index
            if mat.emissiveFactor is not None:
                m.emissive_factor = list(mat.emissiveFactor)
            m.alpha_mode = mat.alphaMode or "OPAQUE"
            if m.alpha_mode == "MASK":
                m.alpha_cutoff = (
                    float(mat.alphaCutoff) if mat.alphaCutoff is not None else 0.5
                )
            m.double_sided = bool(mat.doubleSided)
            out.append(m)
        return out
