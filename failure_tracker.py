"""
Failure Tracker
===============

Sliding-window circuit breaker for auto mode.

Failures from every job feed one global window (account-wide quota and
credential problems surface as failures across all jobs). The tracker
signals a pause when:
- CONSECUTIVE_FAILURE_THRESHOLD failures fall inside FAILURE_WINDOW_SECONDS, or
- a single failure is classified as rate_limit / quota_exhausted / authentication

Pausing is idempotent: once paused, further failures do not signal again
until reset() is called (explicit user restart). A job success clears the
window but leaves the paused flag alone.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from errors import ErrorInfo, ErrorType

logger = logging.getLogger(__name__)

CONSECUTIVE_FAILURE_THRESHOLD = 3
FAILURE_WINDOW_SECONDS = 60.0


@dataclass(slots=True, frozen=True)
class FailureRecord:
    """One failure inside the sliding window. Never persisted."""

    timestamp: float
    error_type: ErrorType
    message: str


class FailureTracker:
    """Global consecutive-failure counter with a sliding time window."""

    def __init__(
        self,
        threshold: int = CONSECUTIVE_FAILURE_THRESHOLD,
        window_seconds: float = FAILURE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures: list[FailureRecord] = []
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def failure_count(self) -> int:
        return len(self._failures)

    @property
    def last_failure(self) -> FailureRecord | None:
        return self._failures[-1] if self._failures else None

    def _prune(self, now: float) -> None:
        self._failures = [f for f in self._failures if now - f.timestamp < self.window_seconds]

    def should_pause(self, error_info: ErrorInfo) -> bool:
        """
        Record a failure and report whether the pause condition holds.

        Does not consult or change the paused flag.
        """
        now = self._clock()
        self._failures.append(FailureRecord(now, error_info.type, error_info.message))
        self._prune(now)

        if len(self._failures) >= self.threshold:
            return True
        return error_info.pauses_immediately

    def record_failure(self, error_info: ErrorInfo) -> bool:
        """
        Record a failure.

        Returns:
            True exactly when this failure newly triggers a pause.
        """
        if not self.should_pause(error_info):
            return False
        if self._paused:
            return False

        self._paused = True
        logger.info(
            "Pausing auto mode after %d failure(s) in window. Last error: %s",
            len(self._failures), error_info.type.value,
        )
        return True

    def record_success(self) -> None:
        """A job succeeded: clear the failure window."""
        self._failures = []

    def reset(self) -> None:
        """Explicit user restart: clear the window and the paused flag."""
        self._failures = []
        self._paused = False

    def pause_message(self) -> str:
        """Human-readable explanation for the current pause."""
        count = len(self._failures)
        if count >= self.threshold:
            return (
                f"Auto Mode paused: {count} consecutive failures detected. "
                "This may indicate a quota limit or API issue. Please check your usage and try again."
            )
        return (
            "Auto Mode paused: Usage limit or API error detected. "
            "Please wait for your quota to reset or check your API configuration."
        )
