"""
State Machine Tests
Gating, rollout, monitoring, rollback and cancellation of a single attempt
"""

import asyncio
import time

import pytest

from conftest import FakeScorer, MockRedis
from deploygate.backends import DryRunBackend
from deploygate.config import PipelineConfig
from deploygate.errors import ErrorKind, InvalidInput, ScorerUnavailable
from deploygate.feeds import ScriptedStatusFeed
from deploygate.journal import RedisAttemptJournal
from deploygate.models import (
    AttemptState,
    BackendStatus,
    BuildResult,
    DeploymentAttempt,
    Severity,
)
from deploygate.state_machine import DeploymentStateMachine


def run_attempt(change, scorer, backend, feed, config, journal=None) -> DeploymentAttempt:
    async def scenario():
        machine = DeploymentStateMachine(
            DeploymentAttempt.new(change), scorer, backend, feed, config, journal
        )
        return await machine.run()

    return asyncio.run(scenario())


def states(attempt):
    return [record.to_state for record in attempt.history]


class ErroredBackend(DryRunBackend):
    """Starts fine, then reports the workload as errored"""

    async def status(self, handle):
        return BackendStatus.ERRORED


class HangingStatusBackend(DryRunBackend):
    """Health checks never answer"""

    async def status(self, handle):
        await asyncio.sleep(3600)


class SlowScorer(FakeScorer):
    async def score(self, change):
        self.calls += 1
        await asyncio.sleep(30)


class TestGating:
    """Risk gating in Analyzing"""

    def test_score_above_threshold_aborts_without_backend_calls(self, change, fast_config):
        scorer = FakeScorer(0.8)
        backend = DryRunBackend()
        feed = ScriptedStatusFeed()

        attempt = run_attempt(change, scorer, backend, feed, fast_config)

        assert attempt.state == AttemptState.ABORTED
        assert len(attempt.history) == 2
        assert states(attempt) == [AttemptState.ANALYZING, AttemptState.ABORTED]
        assert backend.create_calls == 0
        assert backend.start_calls == 0
        assert feed.total_polls == 0
        assert attempt.risk_assessment.score == 0.8
        assert "exceeds threshold" in attempt.terminal_outcome.reason
        assert attempt.terminal_outcome.severity == Severity.INFO
        print("✓ High risk change aborted before deployment")

    def test_score_equal_to_threshold_deploys(self, change, fast_config):
        backend = DryRunBackend()
        attempt = run_attempt(change, FakeScorer(0.5), backend, ScriptedStatusFeed(), fast_config)

        assert attempt.state == AttemptState.SUCCEEDED
        assert backend.create_calls == 1
        print("✓ Threshold is inclusive for deployment")

    def test_zero_threshold_aborts_any_positive_score(self, change, fast_config):
        config = fast_config.model_copy(update={"risk_threshold": 0.0})
        backend = DryRunBackend()
        attempt = run_attempt(change, FakeScorer(0.01), backend, ScriptedStatusFeed(), config)

        assert attempt.state == AttemptState.ABORTED
        assert backend.create_calls == 0

    def test_scorer_unavailable_retries_then_fails(self, change, fast_config):
        scorer = FakeScorer(ScorerUnavailable("model endpoint down"))
        backend = DryRunBackend()

        attempt = run_attempt(change, scorer, backend, ScriptedStatusFeed(), fast_config)

        assert scorer.calls == 3
        assert attempt.scorer_calls == 3
        assert attempt.state == AttemptState.FAILED
        assert attempt.terminal_outcome.error_kind == ErrorKind.SCORER_UNAVAILABLE
        assert attempt.terminal_outcome.severity == Severity.ERROR
        assert "model endpoint down" in attempt.history[-1].detail
        assert backend.create_calls == 0
        print("✓ Scorer retried 3 times before failing")

    def test_retry_limit_zero_calls_scorer_once(self, change, fast_config):
        config = fast_config.model_copy(update={"scorer_retry_limit": 0})
        scorer = FakeScorer(ScorerUnavailable("down"))

        attempt = run_attempt(change, scorer, DryRunBackend(), ScriptedStatusFeed(), config)

        assert scorer.calls == 1
        assert attempt.state == AttemptState.FAILED

    def test_transient_scorer_failure_recovers(self, change, fast_config):
        scorer = FakeScorer(ScorerUnavailable("blip"), 0.2)

        attempt = run_attempt(change, scorer, DryRunBackend(), ScriptedStatusFeed(), fast_config)

        assert scorer.calls == 2
        assert attempt.state == AttemptState.SUCCEEDED

    def test_invalid_input_is_not_retried(self, change, fast_config):
        scorer = FakeScorer(InvalidInput("revision is blank"))
        backend = DryRunBackend()

        attempt = run_attempt(change, scorer, backend, ScriptedStatusFeed(), fast_config)

        assert scorer.calls == 1
        assert attempt.state == AttemptState.FAILED
        assert attempt.terminal_outcome.error_kind == ErrorKind.INVALID_INPUT
        assert backend.create_calls == 0

    def test_unexpected_scorer_exception_counts_as_unavailable(self, change, fast_config):
        scorer = FakeScorer(RuntimeError("boom"))

        attempt = run_attempt(change, scorer, DryRunBackend(), ScriptedStatusFeed(), fast_config)

        assert scorer.calls == 3
        assert attempt.terminal_outcome.error_kind == ErrorKind.SCORER_UNAVAILABLE

    def test_scorer_returning_nothing_counts_as_unavailable(self, change, fast_config):
        scorer = FakeScorer(None)

        attempt = run_attempt(change, scorer, DryRunBackend(), ScriptedStatusFeed(), fast_config)

        assert scorer.calls == 3
        assert attempt.state == AttemptState.FAILED


class TestRollout:
    """Deploying, Monitoring and RollingBack"""

    def test_successful_attempt(self, change, fast_config):
        backend = DryRunBackend()
        feed = ScriptedStatusFeed([BuildResult.RUNNING, BuildResult.SUCCESS])

        attempt = run_attempt(change, FakeScorer(0.2), backend, feed, fast_config)

        assert attempt.state == AttemptState.SUCCEEDED
        assert states(attempt) == [
            AttemptState.ANALYZING,
            AttemptState.DEPLOYING,
            AttemptState.MONITORING,
            AttemptState.SUCCEEDED,
        ]
        assert backend.create_calls == 1
        assert backend.start_calls == 1
        assert backend.stop_calls == 0
        assert feed.total_polls == 2
        assert attempt.backend_handle == f"dryrun-{attempt.id}"
        assert attempt.terminal_outcome.succeeded
        print("✓ Attempt succeeded with one create, one start, no stop")

    def test_build_failure_rolls_back(self, change, fast_config):
        backend = DryRunBackend()
        feed = ScriptedStatusFeed([BuildResult.RUNNING, BuildResult.FAILURE])

        attempt = run_attempt(change, FakeScorer(0.2), backend, feed, fast_config)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert states(attempt)[-2:] == [AttemptState.ROLLING_BACK, AttemptState.ROLLED_BACK]
        assert backend.stop_calls == 1
        assert backend.resources[attempt.backend_handle] == BackendStatus.STOPPED
        assert attempt.terminal_outcome.error_kind == ErrorKind.BUILD_FAILED
        assert attempt.terminal_outcome.severity == Severity.WARNING
        print("✓ Failed build rolled back with exactly one stop")

    def test_stop_failure_is_critical(self, change, fast_config):
        backend = DryRunBackend(fail_stop=True)
        feed = ScriptedStatusFeed([BuildResult.FAILURE])

        attempt = run_attempt(change, FakeScorer(0.2), backend, feed, fast_config)

        assert attempt.state == AttemptState.FAILED
        assert states(attempt)[-2:] == [AttemptState.ROLLING_BACK, AttemptState.FAILED]
        assert backend.stop_calls == 1
        assert attempt.terminal_outcome.error_kind == ErrorKind.ROLLBACK_FAILED
        assert attempt.terminal_outcome.severity == Severity.CRITICAL
        print("✓ Rollback failure reported as critical")

    def test_monitoring_timeout_rolls_back(self, change, fast_config):
        config = fast_config.model_copy(
            update={"monitoring_timeout": 0.05, "monitoring_poll_interval": 0.01}
        )
        backend = DryRunBackend()
        feed = ScriptedStatusFeed([BuildResult.RUNNING])

        attempt = run_attempt(change, FakeScorer(0.2), backend, feed, config)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.history[-2].error_kind == ErrorKind.MONITORING_TIMEOUT
        assert attempt.terminal_outcome.error_kind == ErrorKind.MONITORING_TIMEOUT
        assert backend.stop_calls == 1
        assert feed.total_polls >= 1

    def test_unknown_results_keep_polling(self, change, fast_config):
        feed = ScriptedStatusFeed([BuildResult.UNKNOWN, BuildResult.UNKNOWN, BuildResult.SUCCESS])

        attempt = run_attempt(change, FakeScorer(0.2), DryRunBackend(), feed, fast_config)

        assert attempt.state == AttemptState.SUCCEEDED
        assert feed.total_polls == 3

    def test_feed_exception_counts_as_unknown(self, change, fast_config):
        config = fast_config.model_copy(update={"monitoring_timeout": 0.05})

        class BrokenFeed(ScriptedStatusFeed):
            async def latest(self, job_id, build_id):
                raise ConnectionError("jenkins unreachable")

        backend = DryRunBackend()
        attempt = run_attempt(change, FakeScorer(0.2), backend, BrokenFeed(), config)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.terminal_outcome.error_kind == ErrorKind.MONITORING_TIMEOUT
        assert backend.stop_calls == 1

    def test_hanging_feed_times_out(self, change, fast_config):
        config = fast_config.model_copy(update={"monitoring_timeout": 0.2})

        class HangingFeed(ScriptedStatusFeed):
            async def latest(self, job_id, build_id):
                await asyncio.sleep(3600)

        backend = DryRunBackend()
        started = time.monotonic()
        attempt = run_attempt(change, FakeScorer(0.2), backend, HangingFeed(), config)

        assert time.monotonic() - started < 5
        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.terminal_outcome.error_kind == ErrorKind.MONITORING_TIMEOUT
        assert backend.stop_calls == 1
        print("✓ Stalled status feed bounded by the monitoring timeout")

    def test_hanging_health_check_times_out(self, change, fast_config):
        config = fast_config.model_copy(update={"monitoring_timeout": 0.2})
        backend = HangingStatusBackend()
        feed = ScriptedStatusFeed([BuildResult.RUNNING])

        started = time.monotonic()
        attempt = run_attempt(change, FakeScorer(0.2), backend, feed, config)

        assert time.monotonic() - started < 5
        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.terminal_outcome.error_kind == ErrorKind.MONITORING_TIMEOUT
        assert backend.stop_calls == 1

    def test_backend_errored_rolls_back(self, change, fast_config):
        backend = ErroredBackend()
        feed = ScriptedStatusFeed([BuildResult.RUNNING])

        attempt = run_attempt(change, FakeScorer(0.2), backend, feed, fast_config)

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.terminal_outcome.error_kind == ErrorKind.BACKEND_ERRORED
        assert backend.stop_calls == 1

    def test_backend_health_can_be_ignored(self, change, fast_config):
        config = fast_config.model_copy(update={"watch_backend_health": False})
        feed = ScriptedStatusFeed([BuildResult.RUNNING, BuildResult.SUCCESS])

        attempt = run_attempt(change, FakeScorer(0.2), ErroredBackend(), feed, config)

        assert attempt.state == AttemptState.SUCCEEDED

    def test_start_failure_does_not_roll_back(self, change, fast_config):
        backend = DryRunBackend(fail_start=True)
        feed = ScriptedStatusFeed()

        attempt = run_attempt(change, FakeScorer(0.2), backend, feed, fast_config)

        assert attempt.state == AttemptState.FAILED
        assert attempt.terminal_outcome.error_kind == ErrorKind.BACKEND_START_FAILED
        assert backend.stop_calls == 0
        assert feed.total_polls == 0

    def test_create_failure_fails_without_start(self, change, fast_config):
        backend = DryRunBackend(fail_create=True)

        attempt = run_attempt(change, FakeScorer(0.2), backend, ScriptedStatusFeed(), fast_config)

        assert attempt.state == AttemptState.FAILED
        assert attempt.terminal_outcome.error_kind == ErrorKind.BACKEND_CREATE_FAILED
        assert attempt.backend_handle is None
        assert backend.start_calls == 0
        assert backend.stop_calls == 0

    def test_transition_recorded_before_adapter_call(self, change, fast_config):
        seen = {}

        class RecordingBackend(DryRunBackend):
            async def create(self, attempt_id, change):
                seen["create"] = machine.attempt.history[-1].to_state
                return await super().create(attempt_id, change)

            async def stop(self, handle):
                seen["stop"] = machine.attempt.history[-1].to_state
                return await super().stop(handle)

        feed = ScriptedStatusFeed([BuildResult.FAILURE])

        async def drive():
            nonlocal machine
            machine = DeploymentStateMachine(
                DeploymentAttempt.new(change), FakeScorer(0.2), RecordingBackend(), feed, fast_config
            )
            return await machine.run()

        machine = None
        attempt = asyncio.run(drive())

        assert attempt.state == AttemptState.ROLLED_BACK
        assert seen["create"] == AttemptState.DEPLOYING
        assert seen["stop"] == AttemptState.ROLLING_BACK

    def test_history_is_contiguous(self, change, fast_config):
        feed = ScriptedStatusFeed([BuildResult.FAILURE])
        attempt = run_attempt(change, FakeScorer(0.2), DryRunBackend(), feed, fast_config)

        previous = AttemptState.PENDING
        for record in attempt.history:
            assert record.from_state == previous
            previous = record.to_state
        assert previous == attempt.state


class TestCancellation:
    """Cooperative cancel requests and raw task cancellation"""

    def test_cancel_before_start_aborts(self, change, fast_config):
        scorer = FakeScorer(0.1)
        backend = DryRunBackend()

        async def scenario():
            machine = DeploymentStateMachine(
                DeploymentAttempt.new(change), scorer, backend, ScriptedStatusFeed(), fast_config
            )
            assert machine.request_cancel("operator changed their mind")
            return await machine.run()

        attempt = asyncio.run(scenario())

        assert attempt.state == AttemptState.ABORTED
        assert attempt.terminal_outcome.error_kind == ErrorKind.CANCELLED
        assert scorer.calls == 0
        assert backend.create_calls == 0

    def test_cancel_during_monitoring_rolls_back(self, change, fast_config):
        config = fast_config.model_copy(update={"monitoring_timeout": 30.0})
        backend = DryRunBackend()
        feed = ScriptedStatusFeed([BuildResult.RUNNING])

        async def scenario():
            machine = DeploymentStateMachine(
                DeploymentAttempt.new(change), FakeScorer(0.2), backend, feed, config
            )
            task = asyncio.ensure_future(machine.run())
            for _ in range(400):
                if machine.attempt.state == AttemptState.MONITORING:
                    break
                await asyncio.sleep(0.005)
            assert machine.request_cancel("operator stop")
            return await task

        attempt = asyncio.run(scenario())

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.terminal_outcome.error_kind == ErrorKind.CANCELLED
        assert backend.stop_calls == 1
        print("✓ Cancellation after deploy routed through rollback")

    def test_cancel_while_deploying_rolls_back(self, change, fast_config):
        config = fast_config.model_copy(update={"monitoring_timeout": 30.0})
        backend = DryRunBackend(start_delay=0.2)
        feed = ScriptedStatusFeed([BuildResult.RUNNING])

        async def scenario():
            machine = DeploymentStateMachine(
                DeploymentAttempt.new(change), FakeScorer(0.2), backend, feed, config
            )
            task = asyncio.ensure_future(machine.run())
            for _ in range(400):
                if machine.attempt.state == AttemptState.DEPLOYING:
                    break
                await asyncio.sleep(0.005)
            assert machine.attempt.state == AttemptState.DEPLOYING
            assert machine.request_cancel("operator stop")
            return await task

        attempt = asyncio.run(scenario())

        assert attempt.state == AttemptState.ROLLED_BACK
        assert states(attempt) == [
            AttemptState.ANALYZING,
            AttemptState.DEPLOYING,
            AttemptState.MONITORING,
            AttemptState.ROLLING_BACK,
            AttemptState.ROLLED_BACK,
        ]
        assert attempt.terminal_outcome.error_kind == ErrorKind.CANCELLED
        assert backend.stop_calls == 1

    def test_cancel_during_hung_health_check(self, change, fast_config):
        config = fast_config.model_copy(update={"monitoring_timeout": 30.0})
        backend = HangingStatusBackend()
        feed = ScriptedStatusFeed([BuildResult.RUNNING])

        async def scenario():
            machine = DeploymentStateMachine(
                DeploymentAttempt.new(change), FakeScorer(0.2), backend, feed, config
            )
            task = asyncio.ensure_future(machine.run())
            for _ in range(400):
                if machine.attempt.state == AttemptState.MONITORING:
                    break
                await asyncio.sleep(0.005)
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await asyncio.wait_for(task, timeout=2)
            return machine.attempt

        attempt = asyncio.run(scenario())

        assert attempt.state == AttemptState.ROLLED_BACK
        assert attempt.terminal_outcome.error_kind == ErrorKind.CANCELLED
        assert backend.stop_calls == 1

    def test_cancel_after_terminal_is_rejected(self, change, fast_config):
        async def scenario():
            machine = DeploymentStateMachine(
                DeploymentAttempt.new(change), FakeScorer(0.9), DryRunBackend(),
                ScriptedStatusFeed(), fast_config,
            )
            await machine.run()
            return machine.request_cancel()

        assert asyncio.run(scenario()) is False

    def test_task_cancel_during_analysis_aborts(self, change, fast_config):
        backend = DryRunBackend()

        async def scenario():
            machine = DeploymentStateMachine(
                DeploymentAttempt.new(change), SlowScorer(), backend, ScriptedStatusFeed(), fast_config
            )
            task = asyncio.ensure_future(machine.run())
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return machine.attempt

        attempt = asyncio.run(scenario())

        assert attempt.state == AttemptState.ABORTED
        assert attempt.terminal_outcome.error_kind == ErrorKind.CANCELLED
        assert backend.create_calls == 0

    def test_task_cancel_during_monitoring_still_rolls_back(self, change, fast_config):
        config = fast_config.model_copy(update={"monitoring_timeout": 30.0})
        backend = DryRunBackend()
        feed = ScriptedStatusFeed([BuildResult.RUNNING])

        async def scenario():
            machine = DeploymentStateMachine(
                DeploymentAttempt.new(change), FakeScorer(0.2), backend, feed, config
            )
            task = asyncio.ensure_future(machine.run())
            for _ in range(400):
                if machine.attempt.state == AttemptState.MONITORING:
                    break
                await asyncio.sleep(0.005)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return machine.attempt

        attempt = asyncio.run(scenario())

        assert attempt.state == AttemptState.ROLLED_BACK
        assert backend.stop_calls == 1


class TestJournaling:
    """Transitions and outcomes written to the redis journal"""

    def test_transitions_and_history_are_journaled(self, change, fast_config):
        redis_client = MockRedis()
        journal = RedisAttemptJournal(redis_client)
        feed = ScriptedStatusFeed([BuildResult.FAILURE])

        attempt = run_attempt(change, FakeScorer(0.2), DryRunBackend(), feed, fast_config, journal)

        assert len(redis_client.lists[f"attempt:{attempt.id}:history"]) == len(attempt.history)
        assert f"attempt:{attempt.id}" in redis_client.storage
        assert len(redis_client.lists["deployment_history:payments-api"]) == 1

    def test_aborted_attempts_do_not_enter_deployment_history(self, change, fast_config):
        redis_client = MockRedis()
        journal = RedisAttemptJournal(redis_client)

        run_attempt(change, FakeScorer(0.9), DryRunBackend(), ScriptedStatusFeed(), fast_config, journal)

        assert "deployment_history:payments-api" not in redis_client.lists


def test_config_defaults_are_usable():
    config = PipelineConfig()
    assert config.monitoring_poll_interval <= config.monitoring_timeout
