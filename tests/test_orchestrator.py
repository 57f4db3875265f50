import io
import json
from pathlib import Path

from bundlegen.building.metadata import ArtifactMetadata
from bundlegen.building.writer import read_bundle
from bundlegen.errors import ErrorCode
from bundlegen.orchestrator import Converter
from bundlegen.reporting import JsonLinesReporter, get_reporter, set_reporter
from bundlegen.sink import LoggingErrorSink
from bundlegen.state import Step

from conversion_helper import FakeTransport, make_glb, mappings, png_bytes, settings_for

SCENE = ("QmSceneA", "models/House.glb")
ROOF = ("QmTexRoof", "models/tex/Roof.png")


def _server(tmp_path: Path, **extra: bytes) -> FakeTransport:
    glb = make_glb(tmp_path / "fixtures", external=("tex/Roof.png",))
    return FakeTransport({"QmSceneA": glb, "QmTexRoof": png_bytes(), **extra})


def _run(work: Path, transport: FakeTransport, items, **changes):
    converter = Converter(settings_for(work, **changes), transport=transport)
    state = converter.convert(items)
    return converter, state


def test_full_run_produces_canonical_bundles_with_metadata(tmp_path: Path):
    work = tmp_path / "work"
    converter, state = _run(work, _server(tmp_path), mappings(SCENE, ROOF))

    assert state.step is Step.FINISHED
    assert state.last_error_code is ErrorCode.SUCCESS
    out = converter.settings.bundles
    names = {p.name for p in out.iterdir()}
    assert {"QmSceneA", "QmTexRoof"} <= names
    assert "qmscenea" not in names
    assert not any(n.endswith(".manifest") for n in names)
    assert "QmSceneA" in converter.stats.bundles

    meta_path = converter.settings.downloads / "QmSceneA" / "metadata.json"
    meta = ArtifactMetadata.from_json(meta_path.read_text())
    assert meta.dependencies == ["QmTexRoof"]
    info = read_bundle(out / "QmSceneA")
    assert "QmSceneA/metadata.json" in {e["name"] for e in info["entries"]}
    assert "qmtexroof" in info["dependencies"]


def test_second_run_with_skip_is_already_converted_without_fetching(tmp_path: Path):
    work = tmp_path / "work"
    _run(work, _server(tmp_path), mappings(SCENE, ROOF))

    again = _server(tmp_path)
    converter, state = _run(
        work, again, mappings(SCENE, ROOF), skip_already_built=True
    )
    assert state.last_error_code is ErrorCode.ALREADY_CONVERTED
    assert again.calls == []
    assert converter.stats.skipped == 1


def test_identifiers_do_not_depend_on_the_working_root(tmp_path: Path):
    entries = []
    for root in ("first", "second"):
        converter, state = _run(
            tmp_path / root, _server(tmp_path), mappings(SCENE, ROOF)
        )
        assert state.last_error_code is ErrorCode.SUCCESS
        info = read_bundle(converter.settings.bundles / "QmSceneA")
        entries.append(sorted((e["name"], e["guid"]) for e in info["entries"]))
    assert entries[0] == entries[1]


def test_one_broken_container_is_tolerated(tmp_path: Path):
    glb = make_glb(tmp_path / "fixtures")
    transport = FakeTransport(
        {"QmGood1": glb, "QmGood2": glb, "QmBroken": b"not a container"}
    )
    converter, state = _run(
        tmp_path / "work",
        transport,
        mappings(
            ("QmGood1", "a.glb"), ("QmGood2", "b.glb"), ("QmBroken", "c.glb")
        ),
    )
    assert state.last_error_code is ErrorCode.CONVERSION_ERRORS_TOLERATED
    assert converter.stats.total == 3
    assert converter.stats.skipped == 1
    out = converter.settings.bundles
    assert (out / "QmGood1").exists()
    assert (out / "QmGood2").exists()
    assert not (out / "QmBroken").exists()


def test_download_failure_aborts_the_run(tmp_path: Path):
    transport = _server(tmp_path)
    transport.fail.add("QmTexRoof")
    sink = LoggingErrorSink(hash="QmSceneA")
    converter = Converter(
        settings_for(tmp_path / "work"), transport=transport, sink=sink
    )
    state = converter.convert(mappings(SCENE, ROOF))
    assert state.step is Step.FINISHED
    assert state.last_error_code is ErrorCode.DOWNLOAD_FAILED
    assert any(e.code is ErrorCode.DOWNLOAD_FAILED for e in sink.events)
    assert sink.dispose_count == 1
    assert not (converter.settings.bundles / "QmSceneA").exists()


def test_zero_byte_texture_is_converted(tmp_path: Path):
    transport = _server(tmp_path, QmEmpty=b"")
    converter, state = _run(
        tmp_path / "work",
        transport,
        mappings(SCENE, ROOF, ("QmEmpty", "blank.png")),
    )
    assert state.last_error_code is ErrorCode.SUCCESS
    staged = converter.settings.downloads / "QmEmpty" / "QmEmpty.png"
    assert staged.exists() and staged.stat().st_size == 0
    assert (converter.settings.bundles / "QmEmpty").exists()


def test_rerun_reuses_staged_textures(tmp_path: Path):
    work = tmp_path / "work"
    _run(work, _server(tmp_path), mappings(SCENE, ROOF))
    again = _server(tmp_path)
    _, state = _run(work, again, mappings(SCENE, ROOF))
    assert state.last_error_code is ErrorCode.SUCCESS
    assert again.calls == ["QmSceneA"]


def test_empty_mapping_list_is_scene_list_null(tmp_path: Path):
    sink = LoggingErrorSink()
    converter = Converter(
        settings_for(tmp_path / "work"), transport=FakeTransport({}), sink=sink
    )
    state = converter.convert([])
    assert state.last_error_code is ErrorCode.SCENE_LIST_NULL
    assert sink.dispose_count == 1


def test_dump_only_stops_after_staging(tmp_path: Path):
    converter, state = _run(
        tmp_path / "work",
        _server(tmp_path),
        mappings(SCENE, ROOF),
        create_bundles=False,
    )
    assert state.last_error_code is ErrorCode.SUCCESS
    assert (converter.settings.downloads / "QmSceneA" / "QmSceneA.glb").exists()
    assert list(converter.settings.bundles.iterdir()) == []


def test_finish_callbacks_run_once(tmp_path: Path):
    converter = Converter(
        settings_for(tmp_path / "work"), transport=_server(tmp_path)
    )
    seen = []
    converter.on_finish.append(lambda state: seen.append(state.last_error_code))
    converter.convert(mappings(SCENE, ROOF))
    converter._finish()
    assert seen == [ErrorCode.SUCCESS]


def test_relative_work_root(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    converter, state = _run(Path("work"), _server(tmp_path), mappings(SCENE, ROOF))
    assert state.last_error_code is ErrorCode.SUCCESS
    assert (tmp_path / "work").is_dir()
    assert (converter.settings.bundles / "QmSceneA").exists()


def test_malformed_container_is_skipped(tmp_path: Path):
    fixtures = tmp_path / "fixtures"
    transport = FakeTransport(
        {
            "QmGood": make_glb(fixtures),
            "QmBadView": make_glb(fixtures, image_view=7),
        }
    )
    converter, state = _run(
        tmp_path / "work",
        transport,
        mappings(("QmGood", "good.glb"), ("QmBadView", "bad.glb")),
    )
    assert state.step is Step.FINISHED
    assert state.last_error_code is ErrorCode.CONVERSION_ERRORS_TOLERATED
    assert converter.stats.skipped == 1
    assert (converter.settings.bundles / "QmGood").exists()
    assert not (converter.settings.bundles / "QmBadView").exists()


def test_hash_casing_is_restored_once(tmp_path: Path):
    transport = FakeTransport(
        {"AbC123": make_glb(tmp_path / "fixtures"), "abc123": b"\x01\x02"}
    )
    converter, state = _run(
        tmp_path / "work",
        transport,
        mappings(("AbC123", "x.glb"), ("abc123", "y.bin")),
    )
    assert state.last_error_code is ErrorCode.SUCCESS
    names = [p.name for p in converter.settings.bundles.iterdir()]
    assert [n for n in names if n.lower() == "abc123"] == ["AbC123"]
    assert "AbC123" in converter.stats.bundles
    assert (converter.settings.downloads / "AbC123" / "metadata.json").exists()


def test_run_reports_stage_sections_and_summaries(tmp_path: Path):
    previous = get_reporter()
    stream = io.StringIO()
    set_reporter(JsonLinesReporter(stream=stream))
    try:
        _, state = _run(tmp_path / "work", _server(tmp_path), mappings(SCENE, ROOF))
    finally:
        set_reporter(previous)
    assert state.last_error_code is ErrorCode.SUCCESS
    events = [json.loads(line) for line in stream.getvalue().splitlines()]
    sections = [e["title"] for e in events if e["event"] == "section"]
    assert sections == ["Fetching", "Building"]
    kinds = [e["summary_type"] for e in events if e["event"] == "summary"]
    assert kinds == ["fetch", "import", "build", "cleanup", "conversion"]
    cleanup = [e for e in events if e.get("summary_type") == "cleanup"][0]
    assert cleanup["failed"] == "0"


def test_cancel_during_build_stops_before_final_pass(tmp_path: Path, monkeypatch):
    converter = Converter(
        settings_for(tmp_path / "work"), transport=_server(tmp_path)
    )
    pipeline = converter.pipeline
    passes = []
    original = pipeline.build_bundles

    def build_then_cancel(*args, **kwargs):
        passes.append(kwargs.get("cancelled"))
        manifest = original(*args, **kwargs)
        converter.cancel()
        return manifest

    monkeypatch.setattr(pipeline, "build_bundles", build_then_cancel)
    state = converter.convert(mappings(SCENE, ROOF))
    assert state.step is Step.FINISHED
    assert state.last_error_code is ErrorCode.UNEXPECTED_ERROR
    assert len(passes) == 1
    assert passes[0] is not None
    assert not (converter.settings.bundles / "QmSceneA").exists()
