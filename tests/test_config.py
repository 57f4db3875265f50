import json
from pathlib import Path

import pytest

from bundlegen.config import BuildTarget, ClientSettings, ShaderKind, load_settings
from bundlegen.errors import ConfigurationError, ErrorCode


def test_yaml_settings(tmp_path: Path):
    cfg = tmp_path / "run.yaml"
    cfg.write_text(
        "work_root: scratch\n"
        "build_target: WINDOWS\n"
        "shader: gltfast\n"
        "target_pointer: [10, -4]\n"
        "fetch_concurrency: 8\n",
        encoding="utf-8",
    )
    s = load_settings(cfg)
    assert s.work_root == Path("scratch")
    assert s.downloads == Path("scratch") / "_Downloaded"
    assert s.bundles == Path("scratch") / "AssetBundles"
    assert s.build_target is BuildTarget.WINDOWS
    assert s.shader is ShaderKind.GLTFAST
    assert s.target_pointer == (10, -4)
    assert s.fetch_concurrency == 8


def test_json_settings_with_overrides(tmp_path: Path):
    cfg = tmp_path / "run.json"
    cfg.write_text(json.dumps({"target_hash": "QmA", "base_url": "http://x/"}))
    s = load_settings(cfg, target_hash="QmB", output_root=None)
    assert s.target_hash == "QmB"
    assert s.entities_endpoint == "http://x/entities/active"


def test_unknown_keys_are_rejected(tmp_path: Path):
    cfg = tmp_path / "run.yaml"
    cfg.write_text("build_targte: webgl\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_settings(cfg)


def test_invalid_platform(tmp_path: Path):
    with pytest.raises(ConfigurationError) as info:
        ClientSettings(build_target="ps5").validate()
    assert info.value.code is ErrorCode.INVALID_PLATFORM


def test_platform_suffixes():
    assert BuildTarget.WEBGL.platform_suffix == ""
    assert BuildTarget.OSX.platform_suffix == "_osx"
