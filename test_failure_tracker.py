"""
Failure Tracker Tests
=====================

Tests for the sliding-window circuit breaker.
Run with: pytest test_failure_tracker.py
"""

from errors import ErrorInfo, ErrorType
from failure_tracker import FailureTracker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def generic(message="boom"):
    return ErrorInfo(ErrorType.GENERIC_EXECUTION_ERROR, message)


def test_three_failures_in_window_pause_once():
    clock = FakeClock()
    tracker = FailureTracker(clock=clock)

    assert tracker.record_failure(generic()) is False
    clock.advance(10)
    assert tracker.record_failure(generic()) is False
    clock.advance(10)
    assert tracker.record_failure(generic()) is True
    assert tracker.paused

    # Already paused: no second signal
    clock.advance(1)
    assert tracker.record_failure(generic()) is False
    assert "consecutive failures" in tracker.pause_message()


def test_failures_outside_window_are_dropped():
    clock = FakeClock()
    tracker = FailureTracker(clock=clock)

    tracker.record_failure(generic())
    tracker.record_failure(generic())
    clock.advance(61)

    assert tracker.record_failure(generic()) is False
    assert tracker.failure_count == 1
    assert not tracker.paused


def test_quota_and_auth_pause_immediately():
    for error_type in (ErrorType.RATE_LIMIT, ErrorType.QUOTA_EXHAUSTED, ErrorType.AUTHENTICATION):
        tracker = FailureTracker(clock=FakeClock())
        assert tracker.record_failure(ErrorInfo(error_type, "limit hit")) is True
        assert "Usage limit" in tracker.pause_message()


def test_success_clears_window_but_not_pause():
    clock = FakeClock()
    tracker = FailureTracker(clock=clock)

    tracker.record_failure(generic())
    tracker.record_failure(generic())
    tracker.record_success()
    assert tracker.failure_count == 0
    assert tracker.record_failure(generic()) is False

    tracker.record_failure(ErrorInfo(ErrorType.RATE_LIMIT, "429"))
    tracker.record_success()
    assert tracker.paused


def test_reset_clears_pause():
    tracker = FailureTracker(clock=FakeClock())
    tracker.record_failure(ErrorInfo(ErrorType.AUTHENTICATION, "bad key"))
    assert tracker.paused

    tracker.reset()

    assert not tracker.paused
    assert tracker.failure_count == 0
    assert tracker.last_failure is None


def test_should_pause_does_not_touch_flag():
    tracker = FailureTracker(clock=FakeClock())
    assert tracker.should_pause(ErrorInfo(ErrorType.RATE_LIMIT, "429")) is True
    assert not tracker.paused
    assert tracker.last_failure.error_type == ErrorType.RATE_LIMIT


def test_success_between_failures_never_reaches_threshold():
    clock = FakeClock()
    tracker = FailureTracker(clock=clock)

    assert tracker.record_failure(generic()) is False
    assert tracker.record_failure(generic()) is False
    tracker.record_success()
    assert tracker.record_failure(generic()) is False
    assert tracker.record_failure(generic()) is False

    assert tracker.failure_count == 2
    assert not tracker.paused
