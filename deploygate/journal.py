"""
Attempt Journal
===============
Durable, append-only record of attempt transitions for audit and replay.

Transitions are written before the adapter call of the state they enter,
so after a crash the journal shows the last state an attempt reached.

Redis layout:
    attempt:<id>                  JSON snapshot of the attempt (TTL)
    attempt:<id>:history          RPUSHed transition records (TTL)
    deployment_history:<service>  LPUSHed outcome summaries, trimmed
"""

import json
from typing import Dict, Optional

import redis

from deploygate import constants
from deploygate.logging_config import get_logger
from deploygate.models import AttemptState, DeploymentAttempt, TransitionRecord, utcnow

logger = get_logger(__name__)


class AttemptJournal:
    """Journal that keeps nothing; used when no store is configured"""

    def record_transition(self, attempt: DeploymentAttempt, record: TransitionRecord):
        pass

    def checkpoint(self, attempt: DeploymentAttempt):
        """Persist the current snapshot (e.g. once a backend handle exists)"""
        pass

    def record_terminal(self, attempt: DeploymentAttempt):
        pass

    def load(self, attempt_id: str) -> Optional[Dict]:
        return None


class RedisAttemptJournal(AttemptJournal):
    """Journal backed by redis lists and keys"""

    def __init__(self, redis_client, ttl_seconds: int = None, history_limit: int = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or constants.ATTEMPT_RECORD_TTL_SECONDS
        self.history_limit = history_limit or constants.DEPLOYMENT_HISTORY_LIMIT

    def record_transition(self, attempt: DeploymentAttempt, record: TransitionRecord):
        key = f"attempt:{attempt.id}"
        try:
            self.redis.rpush(f"{key}:history", json.dumps(record.to_dict()))
            self.redis.expire(f"{key}:history", self.ttl_seconds)
        except redis.RedisError:
            logger.error(
                f"[JOURNAL] Failed to journal {record.from_state.value} -> {record.to_state.value} "
                f"for {attempt.id}",
                exc_info=True,
            )
        self.checkpoint(attempt)

    def checkpoint(self, attempt: DeploymentAttempt):
        try:
            self.redis.setex(f"attempt:{attempt.id}", self.ttl_seconds, json.dumps(attempt.to_dict()))
        except redis.RedisError:
            logger.error(f"[JOURNAL] Failed to store snapshot of {attempt.id}", exc_info=True)

    def record_terminal(self, attempt: DeploymentAttempt):
        deployed = any(r.to_state == AttemptState.DEPLOYING for r in attempt.history)
        if not deployed or attempt.terminal_outcome is None:
            return

        outcome = attempt.terminal_outcome
        summary = {
            "attempt_id": attempt.id,
            "revision": attempt.change.revision,
            "environment": attempt.change.environment,
            "state": outcome.state.value,
            "failed": outcome.state == AttemptState.FAILED,
            "rolled_back": outcome.state == AttemptState.ROLLED_BACK,
            "recorded_at": utcnow().isoformat(),
        }
        history_key = f"deployment_history:{attempt.change.service_name}"
        try:
            self.redis.lpush(history_key, json.dumps(summary))
            self.redis.ltrim(history_key, 0, self.history_limit - 1)
        except redis.RedisError:
            logger.error(f"[JOURNAL] Failed to record deployment history for {attempt.id}", exc_info=True)

    def load(self, attempt_id: str) -> Optional[Dict]:
        try:
            data = self.redis.get(f"attempt:{attempt_id}")
        except redis.RedisError:
            logger.error(f"[JOURNAL] Failed to load {attempt_id}", exc_info=True)
            return None
        return json.loads(data) if data else None
