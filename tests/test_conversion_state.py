import pytest

from bundlegen.errors import (
    BundleBuildFailed,
    DownloadFailed,
    EmbedMaterialFailure,
    ErrorCode,
    GltfCriticalError,
    IdentityError,
    Severity,
    error_code_for,
    failure_policy,
)
from bundlegen.state import ConversionState, StageTimers, Step


def test_initial_state():
    state = ConversionState()
    assert state.step is Step.IDLE
    assert state.last_error_code is ErrorCode.UNDEFINED


def test_steps_only_move_forward():
    state = ConversionState()
    state.advance(Step.FETCHING)
    state.advance(Step.BUILDING)
    with pytest.raises(ValueError):
        state.advance(Step.FETCHING)


def test_force_exit_jumps_to_finished_from_any_step():
    state = ConversionState()
    state.force_exit(ErrorCode.DOWNLOAD_FAILED)
    assert state.finished
    assert state.last_error_code is ErrorCode.DOWNLOAD_FAILED


def test_success_never_overwrites_tolerated_errors():
    state = ConversionState()
    state.last_error_code = ErrorCode.CONVERSION_ERRORS_TOLERATED
    state.last_error_code = ErrorCode.SUCCESS
    assert state.last_error_code is ErrorCode.CONVERSION_ERRORS_TOLERATED
    state.last_error_code = ErrorCode.ASSET_BUNDLE_BUILD_FAIL
    assert state.last_error_code is ErrorCode.ASSET_BUNDLE_BUILD_FAIL


def test_exit_codes_keep_their_numbers():
    assert int(ErrorCode.SUCCESS) == 0
    assert int(ErrorCode.DOWNLOAD_FAILED) == 9
    assert int(ErrorCode.CONVERSION_ERRORS_TOLERATED) == 12
    assert int(ErrorCode.ALREADY_CONVERTED) == 13


@pytest.mark.parametrize(
    "error, severity",
    [
        (GltfCriticalError(ErrorCode.GLTFAST_CRITICAL_ERROR, "x"), Severity.SKIP_ASSET),
        (EmbedMaterialFailure(ErrorCode.EMBED_MATERIAL_FAILURE, "x"), Severity.SKIP_ASSET),
        (DownloadFailed(ErrorCode.DOWNLOAD_FAILED, "x"), Severity.FATAL),
        (IdentityError(ErrorCode.UNEXPECTED_ERROR, "x"), Severity.FATAL),
        (BundleBuildFailed(ErrorCode.ASSET_BUNDLE_BUILD_FAIL, "x"), Severity.FATAL),
        (RuntimeError("boom"), Severity.FATAL),
    ],
)
def test_failure_policy(error, severity):
    assert failure_policy(error) is severity


def test_unclassified_errors_map_to_unexpected():
    assert error_code_for(KeyError("k")) is ErrorCode.UNEXPECTED_ERROR
    err = DownloadFailed(ErrorCode.DOWNLOAD_FAILED, "x", {"url": "u"})
    assert err.to_dict()["exit_code"] == 9


def test_stage_timers_accumulate():
    timers = StageTimers()
    with timers.timed("fetch"):
        pass
    with timers.timed("fetch"):
        pass
    assert set(timers.elapsed) == {"fetch"}
    assert timers.total() >= 0.0
