import pytest

from sagaflow.errors import (
    RESULT_FAILURE,
    RESULT_ONGOING,
    RESULT_SUCCESS,
    DtmError,
    FailureError,
    OngoingError,
    error_from_result,
)


def test_failure_result_maps_to_failure_error():
    err = error_from_result(RESULT_FAILURE)
    assert isinstance(err, FailureError)
    assert str(err) == "FAILURE"


def test_ongoing_result_maps_to_ongoing_error():
    err = error_from_result(RESULT_ONGOING)
    assert isinstance(err, OngoingError)
    assert str(err) == "ONGOING"


@pytest.mark.parametrize("result", [RESULT_SUCCESS, "", "SOMETHING_ELSE"])
def test_success_and_unknown_results_map_to_none(result):
    assert error_from_result(result) is None


def test_custom_message_keeps_result():
    err = FailureError("reason: insufficient balance")
    assert str(err) == "reason: insufficient balance"
    assert err.result == RESULT_FAILURE


def test_errors_are_catchable_as_dtm_error():
    err = error_from_result(RESULT_ONGOING)
    assert isinstance(err, DtmError)
    assert err.result == RESULT_ONGOING
    failure = error_from_result(RESULT_FAILURE)
    assert isinstance(failure, DtmError)
    assert failure.result == RESULT_FAILURE


def test_base_error_has_empty_default_message():
    assert str(DtmError()) == ""