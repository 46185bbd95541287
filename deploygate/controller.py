"""
Pipeline Controller
===================
Orchestration entry point. Accepts change descriptors, drives one
DeploymentStateMachine per attempt, and returns the terminal attempt
record. Callers branch on `attempt.terminal_outcome`, never on exceptions:
adapter failures, aborts and rollbacks all come back as records.

Attempts run concurrently, one asyncio task each. The adapters are the only
shared objects.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from deploygate.backends.base import DeploymentBackend
from deploygate.config import PipelineConfig
from deploygate.feeds.base import StatusFeed
from deploygate.journal import AttemptJournal
from deploygate.logging_config import get_logger
from deploygate.metrics import (
    ATTEMPT_DURATION,
    ATTEMPT_OUTCOMES,
    ATTEMPTS_STARTED,
    increment_counter,
    observe_latency,
    track_active_attempt,
)
from deploygate.models import ChangeDescriptor, DeploymentAttempt, Severity
from deploygate.scoring.base import RiskScorer
from deploygate.state_machine import DeploymentStateMachine

logger = get_logger(__name__)

_LOG_LEVELS = {
    Severity.INFO: "info",
    Severity.WARNING: "warning",
    Severity.ERROR: "error",
    Severity.CRITICAL: "critical",
}


class PipelineController:
    """
    Runs deployment attempts.

    Attributes:
        max_retained: Terminal attempts kept in memory for lookups; older
            ones are dropped from memory only (the journal keeps them)
    """

    def __init__(
        self,
        scorer: RiskScorer,
        backend: DeploymentBackend,
        feed: StatusFeed,
        config: PipelineConfig = None,
        journal: AttemptJournal = None,
        max_retained: int = 1000,
    ):
        self.scorer = scorer
        self.backend = backend
        self.feed = feed
        self.config = config or PipelineConfig()
        self.journal = journal or AttemptJournal()
        self.max_retained = max_retained

        self._attempts: "OrderedDict[str, DeploymentAttempt]" = OrderedDict()
        self._machines: Dict[str, DeploymentStateMachine] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ========================================================================
    # Running attempts
    # ========================================================================

    async def run(self, change: ChangeDescriptor) -> DeploymentAttempt:
        """Create a new attempt for `change` and drive it to a terminal state"""
        machine = self._accept(change)
        return await self._drive(machine)

    def submit(self, change: ChangeDescriptor) -> DeploymentAttempt:
        """Start an attempt in the background and return its live record"""
        machine = self._accept(change)
        attempt_id = machine.attempt.id
        task = asyncio.ensure_future(self._drive(machine))
        self._tasks[attempt_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(attempt_id, None))
        return machine.attempt

    async def run_many(self, changes: Iterable[ChangeDescriptor]) -> List[DeploymentAttempt]:
        """Run one attempt per change concurrently; results keep input order"""
        return list(await asyncio.gather(*(self.run(change) for change in changes)))

    def _accept(self, change: ChangeDescriptor) -> DeploymentStateMachine:
        attempt = DeploymentAttempt.new(change)
        machine = DeploymentStateMachine(
            attempt,
            scorer=self.scorer,
            backend=self.backend,
            feed=self.feed,
            config=self.config,
            journal=self.journal,
        )
        self._attempts[attempt.id] = attempt
        self._machines[attempt.id] = machine

        increment_counter(ATTEMPTS_STARTED, {"environment": change.environment})
        logger.info(
            f"[GATE] Accepted {attempt.id}: {change.content_ref} @ {change.revision} "
            f"-> {change.environment}"
        )
        return machine

    async def _drive(self, machine: DeploymentStateMachine) -> DeploymentAttempt:
        attempt = machine.attempt
        started = time.monotonic()
        try:
            with track_active_attempt():
                await machine.run()
        finally:
            self._machines.pop(attempt.id, None)
            self._report(attempt, time.monotonic() - started)
            self._evict()
        return attempt

    def _report(self, attempt: DeploymentAttempt, duration: float):
        outcome = attempt.terminal_outcome
        if outcome is None:
            logger.error(f"[GATE] {attempt.id} stopped in non-terminal state {attempt.state.value}")
            return

        increment_counter(
            ATTEMPT_OUTCOMES,
            {"state": outcome.state.value, "environment": attempt.change.environment},
        )
        observe_latency(ATTEMPT_DURATION, {"state": outcome.state.value}, duration)

        log = getattr(logger, _LOG_LEVELS[outcome.severity])
        kind = f" [{outcome.error_kind.value}]" if outcome.error_kind else ""
        log(f"[GATE] {attempt.id} finished {outcome.state.value} in {duration:.1f}s: {outcome.reason}{kind}")

    def _evict(self):
        excess = len(self._attempts) - self.max_retained
        if excess <= 0:
            return
        for attempt_id in list(self._attempts):
            if excess <= 0:
                break
            if self._attempts[attempt_id].is_terminal:
                del self._attempts[attempt_id]
                excess -= 1

    # ========================================================================
    # Inspection and control
    # ========================================================================

    def get(self, attempt_id: str) -> Optional[DeploymentAttempt]:
        return self._attempts.get(attempt_id)

    def list_attempts(self) -> List[DeploymentAttempt]:
        return list(self._attempts.values())

    def cancel(self, attempt_id: str, reason: str = "cancelled by operator") -> bool:
        """
        Request cancellation of an in-flight attempt.

        Attempts that already deployed are rolled back, never killed.
        Returns False for unknown or finished attempts.
        """
        machine = self._machines.get(attempt_id)
        if machine is None:
            return False
        return machine.request_cancel(reason)

    @property
    def in_flight(self) -> int:
        return len(self._machines)

    async def shutdown(self, cancel_in_flight: bool = False):
        """Wait for background attempts; optionally cancel (and roll back) them first"""
        if cancel_in_flight:
            for machine in list(self._machines.values()):
                machine.request_cancel("controller shutting down")
        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"[GATE] Waiting for {len(tasks)} in-flight attempts")
            await asyncio.gather(*tasks, return_exceptions=True)
