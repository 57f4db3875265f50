from pathlib import Path

from bundlegen.content.paths import (
    AssetKind,
    CanonicalHashes,
    ContentMapping,
    content_table,
    locations_for,
    nicify_name,
    resolve,
)


def test_resolve_layout_is_hash_addressed(tmp_path: Path):
    loc = resolve(tmp_path, ContentMapping("QmAbC", "models/House.glb"))
    assert loc.final_path == tmp_path / "QmAbC" / "QmAbC.glb"
    assert loc.asset_folder == tmp_path / "QmAbC"
    assert loc.hashed_path == "/QmAbC.glb"
    assert loc.file_path == "/models/House.glb"
    assert loc.kind is AssetKind.CONTAINER


def test_logical_paths_are_normalized_independent_of_platform():
    m = ContentMapping("Qm1", ".\\models\\\\tex//Roof.PNG")
    assert m.logical_path == "models/tex/Roof.PNG"
    assert ContentMapping("Qm2", "/a/./b.bin").logical_path == "a/b.bin"


def test_kind_from_extension(tmp_path: Path):
    assert resolve(tmp_path, ContentMapping("a", "x.PNG")).kind is AssetKind.TEXTURE
    assert resolve(tmp_path, ContentMapping("b", "x.bin")).kind is AssetKind.RAW_BUFFER
    assert resolve(tmp_path, ContentMapping("c", "x.txt")).kind is AssetKind.UNKNOWN


def test_canonical_hashes_keep_first_seen_casing():
    table = CanonicalHashes.from_mappings(
        [ContentMapping("QmAbC", "a.glb"), ContentMapping("qmabc", "b.glb")]
    )
    assert table.lookup("QMABC") == "QmAbC"
    assert table.lookup("unknown") is None
    assert table.canonical("unknown") == "unknown"
    assert len(table) == 1


def test_locations_for_filters_and_deduplicates(tmp_path: Path):
    maps = [
        ContentMapping("Qm1", "a.png"),
        ContentMapping("Qm1", "a.png"),
        ContentMapping("Qm1", "copy/a.png"),
        ContentMapping("Qm2", "scene.glb"),
    ]
    textures = locations_for(tmp_path, maps, (".png",))
    assert [l.logical_path for l in textures] == ["a.png", "copy/a.png"]


def test_content_table_keys_are_lower_case(tmp_path: Path):
    locs = locations_for(tmp_path, [ContentMapping("QmT", "Tex/Roof.png")], (".png",))
    assert content_table(locs) == {"/tex/roof.png": tmp_path / "QmT" / "QmT.png"}
    assert list(content_table(locs, by_hash=True)) == ["/qmt.png"]


def test_nicify_name():
    assert nicify_name("my tex.v2?*") == "my_tex_v2__"
    assert nicify_name("a/b:c|d¿") == "a_b_c_d_"
    assert nicify_name("") == "unnamed"
