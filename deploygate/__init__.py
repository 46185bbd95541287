"""
deploygate package initialization
"""

__version__ = "0.1.0"

# Domain types
from .models import (
    AttemptState,
    BackendStatus,
    BuildResult,
    BuildStatus,
    ChangeDescriptor,
    DeploymentAttempt,
    RiskAssessment,
    Severity,
    TerminalOutcome,
    TransitionRecord,
)

# Errors
from .errors import (
    BackendCreateFailed,
    BackendStartFailed,
    BackendStopFailed,
    CircuitOpenError,
    DeployGateError,
    ErrorKind,
    IllegalTransition,
    InvalidInput,
    ScorerUnavailable,
)

# Orchestration
from .config import PipelineConfig
from .controller import PipelineController
from .state_machine import DeploymentStateMachine

__all__ = [
    '__version__',

    # Models
    'AttemptState',
    'BackendStatus',
    'BuildResult',
    'BuildStatus',
    'ChangeDescriptor',
    'DeploymentAttempt',
    'RiskAssessment',
    'Severity',
    'TerminalOutcome',
    'TransitionRecord',

    # Errors
    'BackendCreateFailed',
    'BackendStartFailed',
    'BackendStopFailed',
    'CircuitOpenError',
    'DeployGateError',
    'ErrorKind',
    'IllegalTransition',
    'InvalidInput',
    'ScorerUnavailable',

    # Orchestration
    'PipelineConfig',
    'PipelineController',
    'DeploymentStateMachine',
]
