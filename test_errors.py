"""
Error Classification Tests
==========================

Run with: pytest test_errors.py
"""

import asyncio

from errors import (
    AuthenticationError,
    ErrorType,
    JobCancelledError,
    PlanApprovalTimeoutError,
    PlanCancelledError,
    classify_error,
)


def test_typed_errors():
    assert classify_error(JobCancelledError()).type == ErrorType.CANCELLATION
    assert classify_error(asyncio.CancelledError()).type == ErrorType.CANCELLATION
    assert classify_error(PlanCancelledError()).type == ErrorType.PLAN_CANCELLED
    assert classify_error(PlanApprovalTimeoutError("late")).type == ErrorType.TIMEOUT
    assert classify_error(AuthenticationError()).type == ErrorType.AUTHENTICATION


def test_message_patterns():
    assert classify_error(RuntimeError("429 Too Many Requests")).type == ErrorType.RATE_LIMIT
    assert classify_error(RuntimeError("Your credit balance is too low")).type == ErrorType.QUOTA_EXHAUSTED
    assert classify_error(RuntimeError("Invalid API key provided")).type == ErrorType.AUTHENTICATION
    assert classify_error(RuntimeError("disk full")).type == ErrorType.GENERIC_EXECUTION_ERROR


def test_counting_and_pause_flags():
    assert not classify_error(JobCancelledError()).counts_as_failure
    assert not classify_error(PlanCancelledError()).counts_as_failure
    assert not classify_error(PlanApprovalTimeoutError("late")).counts_as_failure

    generic = classify_error(ValueError("bad value"))
    assert generic.counts_as_failure
    assert not generic.pauses_immediately
    assert classify_error(RuntimeError("rate limit exceeded")).pauses_immediately


def test_event_details_and_empty_message():
    info = classify_error(KeyError())
    assert info.message == "KeyError"
    assert info.to_event_details() == {"error": "KeyError", "errorType": "generic_execution_error"}


def test_network_timeouts_count_as_failures():
    for error in (TimeoutError("Connection timed out"), asyncio.TimeoutError()):
        info = classify_error(error)
        assert info.type == ErrorType.GENERIC_EXECUTION_ERROR
        assert info.counts_as_failure
