"""
Error Taxonomy
==============
Failures raised by the adapters and recorded by the state machine.

Every error carries an ErrorKind so the state machine can write the failure
into the attempt history without inspecting exception types twice.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of failure captured in attempt history"""
    INVALID_INPUT = "invalid_input"
    SCORER_UNAVAILABLE = "scorer_unavailable"
    BACKEND_CREATE_FAILED = "backend_create_failed"
    BACKEND_START_FAILED = "backend_start_failed"
    ROLLBACK_FAILED = "rollback_failed"
    MONITORING_TIMEOUT = "monitoring_timeout"  # a transition reason, never raised
    BUILD_FAILED = "build_failed"
    BACKEND_ERRORED = "backend_errored"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class DeployGateError(Exception):
    """Base class for all adapter and controller errors"""

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self):
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class InvalidInput(DeployGateError):
    """Caller supplied a malformed change descriptor. Never retried."""
    kind = ErrorKind.INVALID_INPUT


class ScorerUnavailable(DeployGateError):
    """Transport or model failure in the risk scorer. Retried by Analyzing."""
    kind = ErrorKind.SCORER_UNAVAILABLE


class BackendCreateFailed(DeployGateError):
    kind = ErrorKind.BACKEND_CREATE_FAILED


class BackendStartFailed(DeployGateError):
    kind = ErrorKind.BACKEND_START_FAILED


class BackendStopFailed(DeployGateError):
    """
    Stop could not bring the resource down.

    Recorded by the state machine as ROLLBACK_FAILED, the highest severity
    outcome: the resource may still be running.
    """
    kind = ErrorKind.ROLLBACK_FAILED


class CircuitOpenError(DeployGateError):
    """Raised by a circuit breaker that is refusing calls"""

    def __init__(self, name: str, retry_in: float):
        super().__init__(f"circuit '{name}' is open", detail=f"retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


class IllegalTransition(DeployGateError):
    """A state change not permitted by the transition table (programming error)"""
