"""
Core Data Model
===============
Change descriptors, risk assessments, build snapshots and the
DeploymentAttempt aggregate that the state machine drives.

A DeploymentAttempt guards its own invariants: states only move forward
along TRANSITIONS, history is append-only, and the terminal outcome is
written exactly once when a terminal state is entered.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from deploygate.errors import ErrorKind, IllegalTransition, InvalidInput


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class AttemptState(str, Enum):
    """Lifecycle states of one deployment attempt"""
    PENDING = "pending"
    ANALYZING = "analyzing"
    DEPLOYING = "deploying"
    MONITORING = "monitoring"
    ROLLING_BACK = "rolling_back"  # internal sub-state of Monitoring
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    AttemptState.SUCCEEDED,
    AttemptState.ROLLED_BACK,
    AttemptState.ABORTED,
    AttemptState.FAILED,
})

# Forward-only transition table
TRANSITIONS: Dict[AttemptState, frozenset] = {
    AttemptState.PENDING: frozenset({AttemptState.ANALYZING, AttemptState.ABORTED}),
    AttemptState.ANALYZING: frozenset({
        AttemptState.ABORTED,
        AttemptState.DEPLOYING,
        AttemptState.FAILED,
    }),
    AttemptState.DEPLOYING: frozenset({AttemptState.MONITORING, AttemptState.FAILED}),
    AttemptState.MONITORING: frozenset({AttemptState.SUCCEEDED, AttemptState.ROLLING_BACK}),
    AttemptState.ROLLING_BACK: frozenset({AttemptState.ROLLED_BACK, AttemptState.FAILED}),
    AttemptState.SUCCEEDED: frozenset(),
    AttemptState.ROLLED_BACK: frozenset(),
    AttemptState.ABORTED: frozenset(),
    AttemptState.FAILED: frozenset(),
}


class BuildResult(str, Enum):
    """Result reported by the CI status feed"""
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"


class BackendStatus(str, Enum):
    """Resource status reported by the execution backend"""
    UNKNOWN = "unknown"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERRORED = "errored"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ============================================================================
# Value objects
# ============================================================================

@dataclass(frozen=True)
class ChangeDescriptor:
    """
    A unit of code under evaluation.

    Attributes:
        content_ref: Artifact or container image reference to deploy
        revision: Source revision (commit sha, tag)
        environment: Target environment (production, staging, ...)
        job_id: CI job whose build status is monitored
        build_id: CI build number for this change
        service: Service name; derived from content_ref when omitted
        command: Optional container command override
        labels: Free-form metadata (files_changed, lines_changed, author, ...)
    """
    content_ref: str
    revision: str
    environment: str
    job_id: str = ""
    build_id: str = ""
    service: Optional[str] = None
    command: Tuple[str, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict, hash=False)

    REQUIRED_FIELDS = ("content_ref", "revision", "environment", "job_id", "build_id")

    @property
    def service_name(self) -> str:
        if self.service:
            return self.service
        ref = self.content_ref.split("@", 1)[0]
        name = ref.rsplit("/", 1)[-1]
        return name.split(":", 1)[0] or ref

    def validate(self) -> "ChangeDescriptor":
        """Raise InvalidInput when a required field is missing or blank"""
        for name in self.REQUIRED_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise InvalidInput(f"change descriptor field '{name}' is required")
        if any(not isinstance(part, str) for part in self.command):
            raise InvalidInput("change descriptor command must be a sequence of strings")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_ref": self.content_ref,
            "revision": self.revision,
            "environment": self.environment,
            "job_id": self.job_id,
            "build_id": self.build_id,
            "service": self.service_name,
            "command": list(self.command),
            "labels": dict(self.labels),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChangeDescriptor":
        try:
            return cls(
                content_ref=data["content_ref"],
                revision=data["revision"],
                environment=data["environment"],
                job_id=str(data.get("job_id", "")),
                build_id=str(data.get("build_id", "")),
                service=data.get("service"),
                command=tuple(data.get("command") or ()),
                labels={str(k): str(v) for k, v in (data.get("labels") or {}).items()},
            )
        except KeyError as e:
            raise InvalidInput(f"change descriptor field {e} is required")


@dataclass(frozen=True)
class RiskAssessment:
    """Normalized scorer output. Always a finite probability in [0, 1]."""
    score: float
    computed_at: datetime = field(default_factory=utcnow)
    model: Optional[str] = None
    factors: Mapping[str, float] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        if isinstance(self.score, bool) or not isinstance(self.score, (int, float)):
            raise ValueError(f"risk score must be a number, got {type(self.score).__name__}")
        if not math.isfinite(self.score) or not 0.0 <= self.score <= 1.0:
            raise ValueError(f"risk score must be a finite value in [0, 1], got {self.score}")
        object.__setattr__(self, "score", float(self.score))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "computed_at": self.computed_at.isoformat(),
            "model": self.model,
            "factors": dict(self.factors),
        }


@dataclass(frozen=True)
class BuildStatus:
    """Read-only snapshot from the status feed"""
    job_id: str
    build_id: str
    result: BuildResult
    observed_at: datetime = field(default_factory=utcnow)
    url: Optional[str] = None


@dataclass(frozen=True)
class TransitionRecord:
    """One entry of an attempt's history"""
    from_state: AttemptState
    to_state: AttemptState
    at: datetime
    reason: str
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "at": self.at.isoformat(),
            "reason": self.reason,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class TerminalOutcome:
    state: AttemptState
    reason: str
    severity: Severity
    decided_at: datetime
    error_kind: Optional[ErrorKind] = None

    @property
    def succeeded(self) -> bool:
        return self.state == AttemptState.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.reason,
            "severity": self.severity.value,
            "decided_at": self.decided_at.isoformat(),
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


def _severity_for(state: AttemptState, error_kind: Optional[ErrorKind]) -> Severity:
    if error_kind == ErrorKind.ROLLBACK_FAILED:
        return Severity.CRITICAL
    if state == AttemptState.FAILED:
        return Severity.ERROR
    if state == AttemptState.ROLLED_BACK:
        return Severity.WARNING
    return Severity.INFO


# ============================================================================
# Aggregate
# ============================================================================

class DeploymentAttempt:
    """
    One end-to-end gating, deploy, monitor and rollback run for a change.

    Mutated only by the state machine driving it; retained after reaching a
    terminal state for audit and replay.
    """

    def __init__(self, attempt_id: str, change: ChangeDescriptor):
        self.id = attempt_id
        self.change = change
        self.created_at = utcnow()
        self.state = AttemptState.PENDING
        self.risk_assessment: Optional[RiskAssessment] = None
        self.backend_handle: Optional[str] = None
        self.scorer_calls = 0
        self._history: List[TransitionRecord] = []
        self._terminal_outcome: Optional[TerminalOutcome] = None

    @classmethod
    def new(cls, change: ChangeDescriptor) -> "DeploymentAttempt":
        return cls(f"attempt_{uuid.uuid4().hex}", change)

    @property
    def history(self) -> Tuple[TransitionRecord, ...]:
        return tuple(self._history)

    @property
    def terminal_outcome(self) -> Optional[TerminalOutcome]:
        return self._terminal_outcome

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(
        self,
        to_state: AttemptState,
        reason: str,
        error_kind: Optional[ErrorKind] = None,
        detail: Optional[str] = None,
    ) -> TransitionRecord:
        """Move to `to_state`, appending the history record first"""
        if to_state not in TRANSITIONS[self.state]:
            raise IllegalTransition(
                f"{self.state.value} -> {to_state.value} is not a permitted transition",
                detail=self.id,
            )

        record = TransitionRecord(
            from_state=self.state,
            to_state=to_state,
            at=utcnow(),
            reason=reason,
            error_kind=error_kind,
            detail=detail,
        )
        self._history.append(record)
        self.state = to_state

        if to_state.is_terminal:
            self._terminal_outcome = TerminalOutcome(
                state=to_state,
                reason=reason,
                severity=_severity_for(to_state, error_kind),
                decided_at=record.at,
                error_kind=error_kind,
            )
        return record

    def attach_risk_assessment(self, assessment: RiskAssessment):
        if self.state != AttemptState.ANALYZING:
            raise IllegalTransition(f"risk assessment attached in state {self.state.value}")
        self.risk_assessment = assessment

    def attach_backend_handle(self, handle: str):
        if self.state != AttemptState.DEPLOYING:
            raise IllegalTransition(f"backend handle attached in state {self.state.value}")
        if self.backend_handle is not None and self.backend_handle != handle:
            raise IllegalTransition(
                f"backend handle already set to {self.backend_handle}", detail=self.id
            )
        self.backend_handle = handle

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "change": self.change.to_dict(),
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "risk_assessment": self.risk_assessment.to_dict() if self.risk_assessment else None,
            "backend_handle": self.backend_handle,
            "scorer_calls": self.scorer_calls,
            "history": [record.to_dict() for record in self._history],
            "terminal_outcome": (
                self._terminal_outcome.to_dict() if self._terminal_outcome else None
            ),
        }

    def __repr__(self):
        return f"<DeploymentAttempt {self.id} state={self.state.value}>"
