from pathlib import Path

import pytest
import yaml

from bundlegen.content.paths import AssetKind, ContentMapping, content_table, resolve
from bundlegen.errors import (
    EmbedMaterialFailure,
    ErrorCode,
    GltfCriticalError,
    GltfImporterNotFound,
)
from bundlegen.identity import derived_guid
from bundlegen.staging.stager import ImportStager
from bundlegen.store.artifacts import FileArtifactStore

from conversion_helper import make_glb, png_bytes, settings_for


def _stager(tmp_path: Path, **changes):
    settings = settings_for(tmp_path / "work", **changes)
    settings.downloads.mkdir(parents=True, exist_ok=True)
    store = FileArtifactStore(settings.downloads)
    store.refresh()
    return ImportStager(store, settings), store, settings


def test_container_extracts_textures_and_materials(tmp_path: Path):
    stager, store, settings = _stager(tmp_path)
    loc = resolve(settings.downloads, ContentMapping("QmScene", "models/House.glb"))
    staged = stager.stage(AssetKind.CONTAINER, make_glb(tmp_path), loc)

    texture = loc.asset_folder / "Textures" / "Albedo.png"
    material = loc.asset_folder / "Materials" / "Wall.mat"
    assert staged.textures == [texture]
    assert staged.materials == [material]
    assert texture.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"
    assert store.guid_for(texture) == derived_guid("QmScene", "Textures/Albedo.png")

    doc = yaml.safe_load(material.read_text())
    assert doc["shader"] == "DCL/Scene"
    assert doc["textures"] == {"baseColor": "QmScene/Textures/Albedo.png"}
    refs = store.load_at_path(loc.final_path).references
    assert store.guid_for(texture) in refs
    assert store.guid_for(material) in refs


def test_shader_artifact_is_tagged_ignore(tmp_path: Path):
    stager, store, settings = _stager(tmp_path)
    loc = resolve(settings.downloads, ContentMapping("QmScene", "House.glb"))
    stager.stage(AssetKind.CONTAINER, make_glb(tmp_path), loc)
    shader = settings.downloads / "Shaders" / "DCL_Scene.shader"
    assert store.bundle_for(shader) == "DCL_Scene_IGNORE"


def test_external_texture_resolves_through_content_table(tmp_path: Path):
    stager, store, settings = _stager(tmp_path)
    tex = resolve(settings.downloads, ContentMapping("QmRoof", "models/tex/Roof.png"))
    stager.stage(AssetKind.TEXTURE, png_bytes(), tex)
    stager.content_map = content_table([tex])

    loc = resolve(settings.downloads, ContentMapping("QmScene", "models/House.glb"))
    glb = make_glb(tmp_path, embedded=(), external=("tex/Roof.png",))
    stager.stage(AssetKind.CONTAINER, glb, loc)
    doc = yaml.safe_load((loc.asset_folder / "Materials" / "Wall.mat").read_text())
    assert doc["textures"]["baseColor"] == "QmRoof/QmRoof.png"
    assert store.guid_for(tex.final_path) in store.load_at_path(loc.final_path).references


def test_unresolved_slot_uses_previous_material_fallback(tmp_path: Path):
    stager, store, settings = _stager(tmp_path)
    tex = resolve(settings.downloads, ContentMapping("QmRoof", "tex/Roof.png"))
    stager.stage(AssetKind.TEXTURE, png_bytes(), tex)
    glb = make_glb(tmp_path, embedded=(), external=("tex/Roof.png",))
    loc = resolve(settings.downloads, ContentMapping("QmScene", "House.glb"))

    with pytest.raises(EmbedMaterialFailure) as info:
        stager.stage(AssetKind.CONTAINER, glb, loc)
    assert info.value.code is ErrorCode.EMBED_MATERIAL_FAILURE

    stager.content_map = content_table([tex])
    stager.stage(AssetKind.CONTAINER, glb, loc)
    stager.content_map = {}
    staged = stager.stage(AssetKind.CONTAINER, glb, loc)
    doc = yaml.safe_load(staged.materials[0].read_text())
    assert doc["textures"]["baseColor"] == "QmRoof/QmRoof.png"


def test_corrupt_container_is_critical(tmp_path: Path):
    stager, _, settings = _stager(tmp_path)
    loc = resolve(settings.downloads, ContentMapping("QmBad", "bad.glb"))
    with pytest.raises(GltfCriticalError):
        stager.stage(AssetKind.CONTAINER, b"definitely not a glb", loc)


def test_container_without_importer(tmp_path: Path):
    stager, _, settings = _stager(tmp_path)
    loc = resolve(settings.downloads, ContentMapping("QmFbx", "model.fbx"))
    with pytest.raises(GltfImporterNotFound):
        stager.stage(AssetKind.CONTAINER, b"fbx", loc)


def test_existing_texture_is_reimported_without_rewrite(tmp_path: Path):
    stager, _, settings = _stager(tmp_path)
    loc = resolve(settings.downloads, ContentMapping("QmTex", "a.png"))
    first = stager.stage(AssetKind.TEXTURE, png_bytes(), loc)
    second = stager.stage(AssetKind.TEXTURE, b"ignored", loc)
    assert second.reimported is True
    assert second.guid == first.guid
    assert loc.final_path.read_bytes() == png_bytes()


def test_zero_byte_buffer_is_staged(tmp_path: Path):
    stager, store, settings = _stager(tmp_path)
    loc = resolve(settings.downloads, ContentMapping("QmEmpty", "data.bin"))
    staged = stager.stage(AssetKind.RAW_BUFFER, b"", loc)
    assert staged.size == 0
    assert store.guid_for(loc.final_path) == staged.guid


def test_out_of_range_image_view_is_critical(tmp_path: Path):
    stager, _, settings = _stager(tmp_path)
    loc = resolve(settings.downloads, ContentMapping("QmBadView", "bad.glb"))
    with pytest.raises(GltfCriticalError) as info:
        stager.stage(AssetKind.CONTAINER, make_glb(tmp_path, image_view=7), loc)
    assert info.value.code is ErrorCode.GLTFAST_CRITICAL_ERROR
    assert "bufferView 7" in info.value.message


def test_textures_with_colliding_file_names_stay_distinct(tmp_path: Path):
    stager, store, settings = _stager(tmp_path)
    loc = resolve(settings.downloads, ContentMapping("QmNames", "names.glb"))
    staged = stager.stage(
        AssetKind.CONTAINER, make_glb(tmp_path, embedded=("a b", "a_b")), loc
    )
    folder = loc.asset_folder / "Textures"
    assert staged.textures == [folder / "a_b.png", folder / "a_b_1.png"]
    guids = {store.guid_for(p) for p in staged.textures}
    assert len(guids) == 2
