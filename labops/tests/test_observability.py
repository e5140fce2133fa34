"""
Operation logging tests.
"""

import logging

import pytest

from labops.app.core.observability import (
    OUTCOME_DENIED,
    OUTCOME_REJECTED,
    configure_logging,
    logger,
    new_correlation_id,
    track_operation,
)


def test_configure_logging_is_idempotent(mocker):
    mocker.patch.object(logger, "handlers", [])
    mocker.patch.object(logger, "level", logger.level)

    configure_logging(logging.DEBUG)
    configure_logging(logging.DEBUG)

    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG


def test_completed_operation_logs_info(mocker):
    log_info = mocker.patch.object(logger, "info")

    with track_operation("transition_route", "corr-1", lab_id="lab-a") as tracker:
        assert tracker.correlation_id == "corr-1"

    log_info.assert_called_once()
    message, = log_info.call_args.args
    extra = log_info.call_args.kwargs["extra"]
    assert message == "Operation Completed"
    assert extra["operation"] == "transition_route"
    assert extra["correlation_id"] == "corr-1"
    assert extra["lab_id"] == "lab-a"
    assert extra["outcome"] == "ok"


@pytest.mark.parametrize("outcome", [OUTCOME_REJECTED, OUTCOME_DENIED])
def test_rejected_operation_logs_warning(outcome, mocker):
    log_warning = mocker.patch.object(logger, "warning")

    with track_operation("update_case") as tracker:
        tracker.mark(outcome, error_code="ERR_CONCURRENCY_001")

    extra = log_warning.call_args.kwargs["extra"]
    assert extra["outcome"] == outcome
    assert extra["error_code"] == "ERR_CONCURRENCY_001"


def test_failed_operation_logs_error_and_reraises(mocker):
    log_error = mocker.patch.object(logger, "error")

    with pytest.raises(RuntimeError):
        with track_operation("record_custody_event"):
            raise RuntimeError("store unavailable")

    assert log_error.call_args.kwargs["extra"]["outcome"] == "failed"


def test_correlation_ids_are_unique():
    assert new_correlation_id() != new_correlation_id()
