"""Import staging: turn fetched blobs into registered store artifacts.

Textures and raw buffers are staged once; containers are re-processed on every
run so their extracted textures and materials follow the current settings.
Extracted artifacts get identifiers derived from the container hash so they
are as stable as the container's own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from ..config import SHADERS_FOLDER_NAME, ClientSettings
from ..content.paths import AssetKind, AssetLocation, nicify_name
from ..errors import (
    ConversionError,
    EmbedMaterialFailure,
    ErrorCode,
    GltfCriticalError,
    GltfImporterNotFound,
)
from ..identity import cid_to_guid, derived_guid
from ..logging import get_logger
from ..reporting import get_reporter
from ..store.artifacts import FileArtifactStore, render_sidecar
from .importer import (
    GltfImporter,
    ImportedContainer,
    ImporterCollaborator,
    MaterialSource,
    TextureSource,
)
from .textures import decode_image, downsize_if_needed, encode_png

__all__ = ["StagedArtifact", "ImportStager", "IGNORE_SUFFIX"]

IGNORE_SUFFIX = "_IGNORE"
TEXTURES_FOLDER = "Textures"
MATERIALS_FOLDER = "Materials"


@dataclass(slots=True)
class StagedArtifact:
    location: AssetLocation
    path: Path
    guid: Optional[str] = None
    textures: List[Path] = field(default_factory=list)
    materials: List[Path] = field(default_factory=list)
    size: int = 0
    reimported: bool = False


class ImportStager:
    def __init__(
        self,
        store: FileArtifactStore,
        settings: ClientSettings,
        importer: Optional[ImporterCollaborator] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.importer = importer if importer is not None else GltfImporter()
        self.content_map: Mapping[str, Path] = {}
        self.index = 0

    # ------------------------------------------------------------------ entry
    def stage(
        self, kind: AssetKind, blob: Optional[bytes], location: AssetLocation
    ) -> StagedArtifact:
        path = location.final_path
        self.index += 1
        get_reporter().advance("import", current_item=location.logical_path)
        if kind in (AssetKind.TEXTURE, AssetKind.RAW_BUFFER) and path.exists():
            rec = self.store.import_at_path(path)
            return StagedArtifact(
                location, path, rec.guid, size=path.stat().st_size, reimported=True
            )
        if blob is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(blob)
        elif not path.exists():
            raise ConversionError(
                code=ErrorCode.UNEXPECTED_ERROR,
                message=f"No content staged for {location}",
                context={"hash": location.hash},
            )
        if kind is AssetKind.TEXTURE:
            downsize_if_needed(path, self.settings.max_texture_size)
        if kind is AssetKind.CONTAINER and self.settings.import_gltf:
            return self._stage_container(location)
        rec = self.store.import_at_path(path)
        return StagedArtifact(location, path, rec.guid, size=path.stat().st_size)

    # -------------------------------------------------------------- container
    def _stage_container(self, location: AssetLocation) -> StagedArtifact:
        logger = get_logger("import")
        path = location.final_path
        root_path = location.logical_path.rpartition("/")[0]
        if not self.importer.configure(
            path, self.content_map, root_path, location.hash, self.settings.shader
        ):
            raise GltfImporterNotFound(
                code=ErrorCode.GLTF_IMPORTER_NOT_FOUND,
                message=f"No importer for {location.logical_path}",
                context={"hash": location.hash},
            )
        try:
            container = self.importer.load(path, self.settings)
            sources = self.importer.textures(container)
            materials = self.importer.materials(container)
        except ConversionError:
            raise
        except (IndexError, KeyError, TypeError, AttributeError, ValueError) as exc:
            raise GltfCriticalError(
                code=ErrorCode.GLTFAST_CRITICAL_ERROR,
                message=f"Malformed container {location.logical_path}: {exc!r}",
                context={"hash": location.hash},
            ) from exc
        rec = self.store.import_at_path(path)
        if self.store.load_at_path(path) is None:
            raise GltfCriticalError(
                code=ErrorCode.GLTFAST_CRITICAL_ERROR,
                message=f"Store could not load imported container {path}",
                context={"hash": location.hash},
            )
        staged = StagedArtifact(location, path, rec.guid, size=path.stat().st_size)

        written = self._write_textures(location, sources, staged)
        shader = self._ensure_shader()
        for mat in materials:
            staged.materials.append(
                self._write_material(location, mat, sources, written, shader)
            )

        references: List[str] = []
        for p in [*staged.textures, *staged.materials, *container.external_paths]:
            guid = self.store.guid_for(p)
            if guid is None and p.exists():
                guid = self.store.import_at_path(p).guid
            if guid:
                references.append(guid)
        self.store.set_references(path, references)
        logger.debug(
            "staged container %s: textures=%d materials=%d",
            location,
            len(staged.textures),
            len(staged.materials),
        )
        return staged

    def _import_derived(self, location: AssetLocation, path: Path) -> str:
        """Register an extracted artifact under an identifier derived from its container."""
        rel = path.relative_to(location.asset_folder).as_posix()
        if self.store.load_at_path(path) is None:
            sidecar = self.store.get_sidecar_path_for(path)
            if not sidecar.exists():
                sidecar.write_text(
                    render_sidecar(derived_guid(location.hash, rel), None, []),
                    encoding="utf-8",
                )
        return self.store.import_at_path(path).guid

    def _write_textures(
        self,
        location: AssetLocation,
        sources: List[TextureSource],
        staged: StagedArtifact,
    ) -> Dict[str, Path]:
        """Extract embedded textures; returns lower-cased name -> artifact path."""
        logger = get_logger("import")
        folder = location.asset_folder / TEXTURES_FOLDER
        written: Dict[str, Path] = {}
        for src in sources:
            if src.embedded:
                target = folder / f"{nicify_name(src.name)}.png"
                if not target.exists():
                    try:
                        data = encode_png(decode_image(src.data or b""))
                    except (OSError, ValueError) as exc:
                        logger.warning(
                            "Texture '%s' of %s could not be decoded: %s",
                            src.name,
                            location.hash,
                            exc,
                        )
                        continue
                    folder.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(data)
                downsize_if_needed(target, self.settings.max_texture_size)
                self._import_derived(location, target)
                staged.textures.append(target)
                written[src.name.lower()] = target
            elif src.external is not None and src.external.exists():
                written[src.name.lower()] = src.external
        return written

    # -------------------------------------------------------------- materials
    def _ensure_shader(self) -> Path:
        shader_name = self.settings.shader.shader_name
        safe = nicify_name(shader_name.replace("/", "_"))
        path = self.store.root / SHADERS_FOLDER_NAME / f"{safe}.shader"
        if self.store.load_at_path(path) is None:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                path.write_text(f"shader: {shader_name}\n", encoding="utf-8")
            sidecar = self.store.get_sidecar_path_for(path)
            if not sidecar.exists():
                sidecar.write_text(
                    render_sidecar(cid_to_guid(f"shader/{shader_name}"), None, []),
                    encoding="utf-8",
                )
            self.store.import_at_path(path)
        tag = f"{safe}{IGNORE_SUFFIX}" if self.settings.strip_shaders else None
        if self.store.load_at_path(path).bundle != tag:  # type: ignore[union-attr]
            self.store.tag_bundle(path, tag)
        return path

    def _slot_path(self, rel: Optional[str]) -> Optional[Path]:
        if not rel:
            return None
        return self.store.root / rel

    def _write_material(
        self,
        location: AssetLocation,
        mat: MaterialSource,
        sources: List[TextureSource],
        written: Dict[str, Path],
        shader: Path,
    ) -> Path:
        folder = location.asset_folder / MATERIALS_FOLDER
        target = folder / f"{nicify_name(mat.name)}.mat"
        previous: Dict[str, str] = {}
        if target.exists():
            old = yaml.safe_load(target.read_text(encoding="utf-8")) or {}
            previous = dict(old.get("textures") or {})

        slots: Dict[str, str] = {}
        refs: List[str] = [self.store.guid_for(shader) or ""]
        for slot, tex_index in mat.slots.items():
            src = sources[tex_index] if 0 <= tex_index < len(sources) else None
            resolved = written.get(src.name.lower()) if src is not None else None
            if resolved is None:
                fallback = self._slot_path(previous.get(slot))
                if fallback is None or not fallback.exists():
                    raise EmbedMaterialFailure(
                        code=ErrorCode.EMBED_MATERIAL_FAILURE,
                        message=(
                            f"Material '{mat.name}' slot '{slot}' has no texture"
                        ),
                        context={"hash": location.hash, "texture": tex_index},
                    )
                resolved = fallback
            slots[slot] = resolved.relative_to(self.store.root).as_posix()
            guid = self.store.guid_for(resolved)
            if guid is None:
                guid = self.store.import_at_path(resolved).guid
            refs.append(guid)

        doc = {
            "name": mat.name,
            "shader": self.settings.shader.shader_name,
            "baseColorFactor": mat.base_color_factor,
            "metallicFactor": mat.metallic_factor,
            "roughnessFactor": mat.roughness_factor,
            "emissiveFactor": mat.emissive_factor,
            "alphaMode": mat.alpha_mode,
            "alphaCutoff": mat.alpha_cutoff,
            "doubleSided": mat.double_sided,
            "textures": slots,
        }
        folder.mkdir(parents=True, exist_ok=True)
        target.write_text(yaml.safe_dump(doc, sort_keys=True), encoding="utf-8")
        self._import_derived(location, target)
        self.store.set_references(target, refs)
        return target
