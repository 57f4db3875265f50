from pathlib import Path

from bundlegen.cleanup import SkipCleanupManager
from bundlegen.config import LOG_FILENAME, BuildTarget
from bundlegen.content.paths import CanonicalHashes, ContentMapping, resolve

from conversion_helper import settings_for


def _manager(tmp_path: Path, *hashes: str, **changes) -> SkipCleanupManager:
    settings = settings_for(tmp_path / "work", **changes)
    settings.bundles.mkdir(parents=True, exist_ok=True)
    canonical = CanonicalHashes.from_mappings(
        [ContentMapping(h, f"{h}.glb") for h in hashes]
    )
    return SkipCleanupManager(settings, canonical)


def test_cleanup_restores_canonical_names_and_drops_manifests(tmp_path: Path):
    mgr = _manager(tmp_path, "QmScene", build_target=BuildTarget.WINDOWS)
    out = mgr.output_root
    for name in ("qmscene_windows", "qmscene_windows.manifest", LOG_FILENAME):
        (out / name).write_text("x")
    final = mgr.cleanup(["qmscene_windows"])
    assert final == [out / "QmScene_windows"]
    assert sorted(p.name for p in out.iterdir()) == ["QmScene_windows"]


def test_cleanup_failure_of_one_bundle_does_not_stop_others(tmp_path: Path):
    mgr = _manager(tmp_path, "QmA", "QmB")
    out = mgr.output_root
    (out / "qma").write_text("a")
    (out / "qmb").write_text("b")
    # A non-empty directory in the way makes the rename fail
    (out / "QmA").mkdir()
    (out / "QmA" / "keep").write_text("k")
    final = mgr.cleanup(["qma", "qmb"])
    assert final == [out / "QmB"]
    assert (out / "qma").exists()
    assert (out / "QmB").read_text() == "b"


def test_should_skip_requires_flag_and_targets(tmp_path: Path):
    mgr = _manager(tmp_path, "QmA", skip_already_built=True)
    assert mgr.should_skip([]) is False
    assert mgr.should_skip(["QmA"]) is False
    (mgr.output_root / "QmA").write_text("bundle")
    assert mgr.should_skip(["qma"]) is True

    off = _manager(tmp_path, "QmA", skip_already_built=False)
    assert off.should_skip(["QmA"]) is False


def test_filter_existing_splits_built_containers(tmp_path: Path):
    mgr = _manager(tmp_path, "QmA", "QmB", skip_already_built=True)
    (mgr.output_root / "QmA").write_text("bundle")
    root = mgr.settings.downloads
    locs = [
        resolve(root, ContentMapping("QmA", "a.glb")),
        resolve(root, ContentMapping("QmB", "b.glb")),
    ]
    keep, skipped = mgr.filter_existing(locs)
    assert [l.hash for l in keep] == ["QmB"]
    assert [l.hash for l in skipped] == ["QmA"]


def test_working_folder_cleanup_honours_keep_downloads(tmp_path: Path):
    mgr = _manager(tmp_path, keep_downloads=False)
    mgr.settings.downloads.mkdir(parents=True)
    root_manifest = mgr.output_root / mgr.output_root.name
    root_manifest.write_text("m")
    mgr.cleanup_working_folders()
    assert not root_manifest.exists()
    assert not mgr.settings.downloads.exists()
