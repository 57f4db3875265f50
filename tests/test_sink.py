import pytest

from bundlegen.errors import ErrorCode, download_failed
from bundlegen.sink import ErrorSink, LoggingErrorSink


def test_sink_contract_is_abstract():
    with pytest.raises(TypeError):
        ErrorSink()


def test_logging_sink_merges_run_context():
    sink = LoggingErrorSink(hash="QmScene", pointer=None)
    sink.report_exception(download_failed("https://c/QmTex", "404"), file="tex.png")
    sink.report_exception(RuntimeError("boom"))
    first, second = sink.events
    assert first.code is ErrorCode.DOWNLOAD_FAILED
    assert first.context["hash"] == "QmScene"
    assert first.context["file"] == "tex.png"
    assert "pointer" not in first.context
    assert second.code is ErrorCode.UNEXPECTED_ERROR


def test_dispose_runs_once():
    sink = LoggingErrorSink()
    sink.dispose()
    sink.dispose()
    assert sink.dispose_count == 1
