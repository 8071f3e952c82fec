"""
Orchestrator Errors
===================

Exception hierarchy for the feature execution orchestrator and the
single classification step applied at the job executor boundary.

Classification drives two decisions:
- the terminal status written to the job
- whether (and how) the failure counts toward the circuit breaker
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

from auth import AUTH_FAILED_MESSAGE, is_auth_error, is_quota_error, is_rate_limit_error


class ErrorType(str, Enum):
    """Error taxonomy used for events, status and failure tracking."""

    CANCELLATION = "cancellation"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXHAUSTED = "quota_exhausted"
    PLAN_CANCELLED = "plan_cancelled"
    TIMEOUT = "timeout"
    GENERIC_EXECUTION_ERROR = "generic_execution_error"


# Failures that pause auto mode on first occurrence
IMMEDIATE_PAUSE_TYPES = frozenset({
    ErrorType.RATE_LIMIT,
    ErrorType.QUOTA_EXHAUSTED,
    ErrorType.AUTHENTICATION,
})

# Failures that never count toward the circuit breaker
UNCOUNTED_TYPES = frozenset({
    ErrorType.CANCELLATION,
    ErrorType.PLAN_CANCELLED,
    ErrorType.TIMEOUT,
})


# =============================================================================
# Exceptions
# =============================================================================

class OrchestratorError(Exception):
    """Base orchestrator exception."""
    pass


class AutoModeAlreadyRunningError(OrchestratorError):
    """start_loop() called while the loop is already running."""

    def __init__(self, message: str = "Auto mode is already running"):
        super().__init__(message)


class JobAlreadyRunningError(OrchestratorError):
    """A job id is already present in the running set."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Feature {job_id} is already running")


class JobNotFoundError(OrchestratorError):
    """The job record does not exist in the store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Feature {job_id} not found")


class WorkspaceValidationError(OrchestratorError):
    """A working directory failed the path policy check."""
    pass


class AuthenticationError(OrchestratorError):
    """The agent reported an invalid or expired credential."""

    def __init__(self, message: str = AUTH_FAILED_MESSAGE):
        super().__init__(message)


class JobCancelledError(OrchestratorError):
    """The job's cancellation token was triggered."""

    def __init__(self, message: str = "Feature execution aborted"):
        super().__init__(message)


class PlanCancelledError(OrchestratorError):
    """The plan was rejected without feedback, or the approval was cancelled."""

    def __init__(self, message: str = "Plan cancelled by user"):
        super().__init__(message)


class PlanApprovalTimeoutError(OrchestratorError):
    """No approval decision arrived before the approval timeout."""
    pass


class PlanApprovalError(OrchestratorError):
    """Wraps unexpected failures while waiting for or applying an approval."""
    pass


class AgentExecutionError(OrchestratorError):
    """The execution provider reported an error event."""
    pass


# =============================================================================
# Classification
# =============================================================================

@dataclass(slots=True)
class ErrorInfo:
    """Normalized classification result."""

    type: ErrorType
    message: str

    @property
    def is_cancellation(self) -> bool:
        return self.type == ErrorType.CANCELLATION

    @property
    def counts_as_failure(self) -> bool:
        return self.type not in UNCOUNTED_TYPES

    @property
    def pauses_immediately(self) -> bool:
        return self.type in IMMEDIATE_PAUSE_TYPES

    def to_event_details(self) -> dict[str, str]:
        return {"error": self.message, "errorType": self.type.value}


def classify_error(error: BaseException) -> ErrorInfo:
    """
    Classify an exception into the error taxonomy.

    Exception types are checked first; plain exceptions fall back to
    message pattern matching (quota, rate limit, authentication).
    """
    if isinstance(error, (JobCancelledError, asyncio.CancelledError)):
        return ErrorInfo(ErrorType.CANCELLATION, str(error) or "Feature stopped by user")

    message = str(error) or type(error).__name__

    if isinstance(error, PlanCancelledError):
        return ErrorInfo(ErrorType.PLAN_CANCELLED, message)
    if isinstance(error, PlanApprovalTimeoutError):
        return ErrorInfo(ErrorType.TIMEOUT, message)
    if isinstance(error, AuthenticationError):
        return ErrorInfo(ErrorType.AUTHENTICATION, message)

    if is_quota_error(message):
        return ErrorInfo(ErrorType.QUOTA_EXHAUSTED, message)
    if is_rate_limit_error(message):
        return ErrorInfo(ErrorType.RATE_LIMIT, message)
    if is_auth_error(message):
        return ErrorInfo(ErrorType.AUTHENTICATION, message)

    return ErrorInfo(ErrorType.GENERIC_EXECUTION_ERROR, message)
