import io
import json

import pytest

from bundlegen.logging import configure_logging, get_logger
from bundlegen.reporting import (
    JsonLinesReporter,
    PlainReporter,
    get_reporter,
    set_reporter,
    task,
)
from bundlegen.reporting.jsonl import parse_summary


@pytest.fixture
def jsonl():
    previous = get_reporter()
    stream = io.StringIO()
    set_reporter(JsonLinesReporter(stream=stream))
    yield stream
    set_reporter(previous)


def _events(stream: io.StringIO):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_parse_summary_fields():
    kind, fields = parse_summary(
        "Fetch summary: requested=3 fetched=2 failed=1 bytes=10"
    )
    assert kind == "fetch"
    assert fields == {"requested": "3", "fetched": "2", "failed": "1", "bytes": "10"}
    assert parse_summary("nothing to see") is None


def test_summary_status_emits_summary_event(jsonl):
    get_reporter().status("Conversion summary: converted=2 total=3 skipped=1")
    events = _events(jsonl)
    summary = [e for e in events if e["event"] == "summary"]
    assert summary[0]["summary_type"] == "conversion"
    assert summary[0]["skipped"] == "1"
    assert events[-1]["event"] == "status"


def test_task_records_failure(jsonl):
    with pytest.raises(RuntimeError):
        with task("fetch", "Fetch content", 2) as final:
            get_reporter().advance("fetch")
            final["fetched"] = 1
            raise RuntimeError("boom")
    end = [e for e in _events(jsonl) if e["event"] == "task_end"][0]
    assert end["status"] == "failed"
    assert end["completed"] == 1
    assert end["fetched"] == 1


def test_logger_records_reach_the_reporter(jsonl):
    configure_logging(0)
    get_logger("convert").warning("Skipped %s", "a.glb")
    events = _events(jsonl)
    assert {"event": "status", "message": "Skipped a.glb", "level": "warning"} in events


def test_plain_reporter_without_colour():
    stream = io.StringIO()
    rep = PlainReporter(stream=stream, use_color=False)
    rep.status("hello")
    rep.error("bad")
    text = stream.getvalue()
    assert "hello" in text
    assert "bad" in text
    assert "\x1b[" not in text
