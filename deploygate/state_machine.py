"""
Deployment State Machine
========================
Drives one DeploymentAttempt from Pending to a terminal state:

    Pending -> Analyzing -> Deploying -> Monitoring -> RollingBack
                  |             |            |              |
               Aborted       Failed      Succeeded    RolledBack / Failed
               Failed

Gating and exhausted scorer retries both resolve to a non-deploying
terminal state; nothing is deployed on an inconclusive risk signal.

Every transition is appended to the attempt history (and journaled) before
the adapter call belonging to the new state is made. Adapter failures are
written into the record of the transition they cause.

Cancellation:
- Before Deploying, a cancel request aborts the attempt; no backend
  resource exists yet.
- From Deploying on, a cancel request is honoured by Monitoring and goes
  through rollback. The deploy/monitor/rollback phase runs in its own task,
  so cancelling the task driving the attempt still completes the rollback
  before the CancelledError propagates.
"""

import asyncio
from typing import Optional, Tuple

from deploygate.backends.base import DeploymentBackend
from deploygate.config import PipelineConfig
from deploygate.errors import (
    BackendCreateFailed,
    BackendStartFailed,
    BackendStopFailed,
    DeployGateError,
    ErrorKind,
    InvalidInput,
    ScorerUnavailable,
)
from deploygate.feeds.base import StatusFeed
from deploygate.journal import AttemptJournal
from deploygate.logging_config import get_logger
from deploygate.metrics import ROLLBACKS, SCORER_CALLS, STATE_TRANSITIONS, increment_counter
from deploygate.models import (
    AttemptState,
    BackendStatus,
    BuildResult,
    DeploymentAttempt,
    RiskAssessment,
)
from deploygate.scoring.base import RiskScorer
from deploygate.tracing import bind_attempt

logger = get_logger(__name__)

# (reason, error kind, detail) that sends Monitoring into RollingBack
RollbackTrigger = Tuple[str, ErrorKind, Optional[str]]


class DeploymentStateMachine:
    """Owns the lifecycle of exactly one deployment attempt"""

    def __init__(
        self,
        attempt: DeploymentAttempt,
        scorer: RiskScorer,
        backend: DeploymentBackend,
        feed: StatusFeed,
        config: PipelineConfig,
        journal: AttemptJournal = None,
    ):
        self.attempt = attempt
        self.scorer = scorer
        self.backend = backend
        self.feed = feed
        self.config = config
        self.journal = journal or AttemptJournal()

        self._cancel_requested = asyncio.Event()
        self._cancel_reason = "cancelled"
        self._rollout: Optional[asyncio.Future] = None

    # ========================================================================
    # Public API
    # ========================================================================

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def request_cancel(self, reason: str = "cancelled by operator") -> bool:
        """
        Ask the attempt to stop. Returns False when it is already terminal.

        Before Deploying the attempt is aborted; afterwards the running
        workload is rolled back.
        """
        if self.attempt.is_terminal:
            return False
        if not self._cancel_requested.is_set():
            self._cancel_reason = reason
            self._cancel_requested.set()
            logger.info(f"[GATE] Cancel requested for {self.attempt.id} in {self.attempt.state.value}: {reason}")
        return True

    async def run(self) -> DeploymentAttempt:
        """Drive the attempt to a terminal state and return it"""
        with bind_attempt(self.attempt.id):
            try:
                await self._drive()
            except asyncio.CancelledError:
                await self._finish_after_task_cancel()
                raise
            except Exception as e:
                logger.critical(
                    f"[GATE] Unexpected error in state {self.attempt.state.value}", exc_info=True
                )
                await self._recover(e)
        return self.attempt

    # ========================================================================
    # Phases
    # ========================================================================

    async def _drive(self):
        if self._cancel_requested.is_set():
            self._enter(AttemptState.ABORTED, self._cancel_reason, ErrorKind.CANCELLED)
            return

        self._enter(AttemptState.ANALYZING, "risk analysis started")
        assessment = await self._analyze()
        if assessment is None:
            return

        if self._cancel_requested.is_set():
            self._enter(AttemptState.ABORTED, self._cancel_reason, ErrorKind.CANCELLED)
            return

        threshold = self.config.risk_threshold
        if assessment.score > threshold:
            self._enter(
                AttemptState.ABORTED,
                f"risk score {assessment.score:.3f} exceeds threshold {threshold:.3f}",
            )
            return

        self._enter(
            AttemptState.DEPLOYING,
            f"risk score {assessment.score:.3f} within threshold {threshold:.3f}",
        )
        # No await between entering Deploying and creating the rollout task
        self._rollout = asyncio.ensure_future(self._rollout_phase())
        await asyncio.shield(self._rollout)

    async def _analyze(self) -> Optional[RiskAssessment]:
        """Score the change, retrying ScorerUnavailable up to the retry limit"""
        max_calls = self.config.scorer_retry_limit + 1
        last_error: Optional[DeployGateError] = None

        for call in range(1, max_calls + 1):
            if self._cancel_requested.is_set():
                self._enter(AttemptState.ABORTED, self._cancel_reason, ErrorKind.CANCELLED)
                return None

            self.attempt.scorer_calls += 1
            try:
                assessment = await self.scorer.score(self.attempt.change)
            except InvalidInput as e:
                increment_counter(SCORER_CALLS, {"result": "invalid_input"})
                self._enter(
                    AttemptState.FAILED,
                    "change descriptor rejected by risk scorer",
                    ErrorKind.INVALID_INPUT,
                    str(e),
                )
                return None
            except ScorerUnavailable as e:
                last_error = e
            except Exception as e:
                logger.warning(f"[GATE] Scorer raised {type(e).__name__}, treating as unavailable", exc_info=True)
                last_error = ScorerUnavailable(f"unexpected scorer error: {type(e).__name__}", detail=str(e))
            else:
                if isinstance(assessment, RiskAssessment):
                    increment_counter(SCORER_CALLS, {"result": "success"})
                    self.attempt.attach_risk_assessment(assessment)
                    return assessment
                last_error = ScorerUnavailable("scorer returned no risk assessment")

            increment_counter(SCORER_CALLS, {"result": "unavailable"})
            if call < max_calls:
                logger.warning(
                    f"[GATE] Scorer unavailable (call {call}/{max_calls}): {last_error}; "
                    f"retrying in {self.config.scorer_retry_backoff}s"
                )
                await self._wait_for_cancel(self.config.scorer_retry_backoff)

        self._enter(
            AttemptState.FAILED,
            f"risk scorer unavailable after {max_calls} calls",
            ErrorKind.SCORER_UNAVAILABLE,
            str(last_error) if last_error else None,
        )
        return None

    async def _rollout_phase(self):
        if not await self._deploy():
            return

        self._enter(
            AttemptState.MONITORING,
            f"workload started, watching build {self.attempt.change.job_id}#{self.attempt.change.build_id}",
        )
        trigger = await self._monitor()
        if trigger is None:
            return

        reason, error_kind, detail = trigger
        self._enter(AttemptState.ROLLING_BACK, reason, error_kind, detail)
        await self._roll_back(reason, error_kind)

    async def _deploy(self) -> bool:
        """create + start; any failure is terminal and nothing is rolled back"""
        change = self.attempt.change

        try:
            handle = await self.backend.create(self.attempt.id, change)
        except BackendCreateFailed as e:
            self._enter(AttemptState.FAILED, "backend create failed", ErrorKind.BACKEND_CREATE_FAILED, str(e))
            return False
        except Exception as e:
            logger.error(f"[GATE] Backend create raised {type(e).__name__}", exc_info=True)
            self._enter(
                AttemptState.FAILED, "backend create failed",
                ErrorKind.BACKEND_CREATE_FAILED, f"{type(e).__name__}: {e}",
            )
            return False

        self.attempt.attach_backend_handle(handle)
        self.journal.checkpoint(self.attempt)

        try:
            await self.backend.start(handle)
        except BackendStartFailed as e:
            self._enter(AttemptState.FAILED, "backend start failed", ErrorKind.BACKEND_START_FAILED, str(e))
            return False
        except Exception as e:
            logger.error(f"[GATE] Backend start raised {type(e).__name__}", exc_info=True)
            self._enter(
                AttemptState.FAILED, "backend start failed",
                ErrorKind.BACKEND_START_FAILED, f"{type(e).__name__}: {e}",
            )
            return False

        return True

    async def _monitor(self) -> Optional[RollbackTrigger]:
        """
        Poll the status feed until a terminal build result, cancellation or
        the monitoring timeout. Returns None after entering Succeeded,
        otherwise the reason to roll back.
        """
        change = self.attempt.change
        loop = asyncio.get_running_loop()
        timeout = self.config.monitoring_timeout
        deadline = loop.time() + timeout
        polls = 0

        while True:
            if self._cancel_requested.is_set():
                return (self._cancel_reason, ErrorKind.CANCELLED, None)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return (
                    f"no terminal build status within {timeout:g}s",
                    ErrorKind.MONITORING_TIMEOUT,
                    f"{polls} polls",
                )

            polls += 1
            result = await self._poll(remaining)

            if result == BuildResult.SUCCESS:
                self._enter(
                    AttemptState.SUCCEEDED,
                    f"build {change.job_id}#{change.build_id} succeeded",
                )
                return None
            if result == BuildResult.FAILURE:
                return (
                    f"build {change.job_id}#{change.build_id} failed",
                    ErrorKind.BUILD_FAILED,
                    None,
                )

            remaining = deadline - loop.time()
            if self.config.watch_backend_health and remaining > 0:
                backend_status = await self._backend_status(remaining)
                if backend_status == BackendStatus.ERRORED:
                    return ("backend reports the workload errored", ErrorKind.BACKEND_ERRORED, None)

            remaining = deadline - loop.time()
            if remaining > 0:
                await self._wait_for_cancel(min(self.config.monitoring_poll_interval, remaining))

    async def _poll(self, remaining: float) -> BuildResult:
        change = self.attempt.change
        try:
            status = await self._within_budget(
                self.feed.latest(change.job_id, change.build_id), remaining
            )
        except asyncio.TimeoutError:
            if not self._cancel_requested.is_set():
                logger.warning(f"[GATE] Status feed did not answer within {remaining:.1f}s")
            return BuildResult.UNKNOWN
        except Exception as e:
            logger.warning(f"[GATE] Status feed raised {type(e).__name__}, counting as unknown", exc_info=True)
            return BuildResult.UNKNOWN

        logger.debug(f"[GATE] Build {change.job_id}#{change.build_id}: {status.result.value}")
        return status.result

    async def _backend_status(self, remaining: float) -> BackendStatus:
        try:
            return await self._within_budget(
                self.backend.status(self.attempt.backend_handle), remaining
            )
        except asyncio.TimeoutError:
            if not self._cancel_requested.is_set():
                logger.warning(f"[GATE] Backend status did not answer within {remaining:.1f}s")
            return BackendStatus.UNKNOWN
        except Exception as e:
            logger.warning(f"[GATE] Backend status raised {type(e).__name__}", exc_info=True)
            return BackendStatus.UNKNOWN

    async def _within_budget(self, coro, seconds: float):
        """
        Await `coro` for at most `seconds`, giving up early when a cancel is
        requested. Raises asyncio.TimeoutError when the call is abandoned.
        """
        call = asyncio.ensure_future(coro)
        cancelled = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled}, timeout=max(0.0, seconds), return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not call.done():
                call.cancel()

        if call in done:
            return call.result()
        raise asyncio.TimeoutError()

    async def _roll_back(self, reason: str, trigger_kind: ErrorKind):
        """Stop the workload exactly once; a failed stop is fatal"""
        handle = self.attempt.backend_handle
        try:
            await self.backend.stop(handle)
        except Exception as e:
            increment_counter(ROLLBACKS, {"result": "failed"})
            detail = str(e) if isinstance(e, BackendStopFailed) else f"{type(e).__name__}: {e}"
            logger.critical(
                f"[GATE] Rollback of {handle} failed, workload may still be running: {detail}"
            )
            self._enter(
                AttemptState.FAILED,
                "rollback failed; workload may still be running",
                ErrorKind.ROLLBACK_FAILED,
                detail,
            )
            return

        increment_counter(ROLLBACKS, {"result": "success"})
        self._enter(AttemptState.ROLLED_BACK, f"rolled back: {reason}", trigger_kind)

    # ========================================================================
    # Cancellation and recovery
    # ========================================================================

    async def _wait_for_cancel(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True as soon as a cancel is requested"""
        if seconds <= 0:
            return self._cancel_requested.is_set()
        try:
            await asyncio.wait_for(self._cancel_requested.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _finish_after_task_cancel(self):
        if self.attempt.is_terminal:
            return
        if self._rollout is None:
            self._enter(AttemptState.ABORTED, "attempt task cancelled", ErrorKind.CANCELLED)
            return

        # A backend resource may exist: let the rollout phase roll it back
        self.request_cancel("attempt task cancelled")
        try:
            await asyncio.shield(self._rollout)
        except Exception as e:
            logger.critical("[GATE] Rollout failed after cancellation", exc_info=True)
            await self._recover(e)

    async def _recover(self, error: Exception):
        """Bring an attempt that hit a programming error to a terminal state"""
        detail = f"{type(error).__name__}: {error}"
        state = self.attempt.state
        try:
            if state.is_terminal:
                return
            if state == AttemptState.PENDING:
                self._enter(AttemptState.ABORTED, "internal error before analysis", ErrorKind.INTERNAL_ERROR, detail)
            elif state in (AttemptState.ANALYZING, AttemptState.DEPLOYING):
                if self.attempt.backend_handle:
                    detail = f"{detail}; backend resource {self.attempt.backend_handle} may exist"
                self._enter(AttemptState.FAILED, "internal error", ErrorKind.INTERNAL_ERROR, detail)
            elif state == AttemptState.MONITORING:
                self._enter(AttemptState.ROLLING_BACK, "internal error while monitoring", ErrorKind.INTERNAL_ERROR, detail)
                await self._roll_back("internal error while monitoring", ErrorKind.INTERNAL_ERROR)
            elif state == AttemptState.ROLLING_BACK:
                self._enter(AttemptState.FAILED, "internal error during rollback", ErrorKind.ROLLBACK_FAILED, detail)
        except Exception:
            logger.critical(f"[GATE] Could not finalize {self.attempt.id} after internal error", exc_info=True)

    # ========================================================================
    # Transitions
    # ========================================================================

    def _enter(self, state: AttemptState, reason: str, error_kind: ErrorKind = None,
               detail: str = None):
        previous = self.attempt.state
        record = self.attempt.transition(state, reason, error_kind, detail)
        self.journal.record_transition(self.attempt, record)
        increment_counter(STATE_TRANSITIONS, {"from_state": previous.value, "to_state": state.value})

        suffix = f" [{error_kind.value}]" if error_kind else ""
        logger.info(f"[GATE] {previous.value} -> {state.value}: {reason}{suffix}")

        if state.is_terminal:
            self.journal.record_terminal(self.attempt)
