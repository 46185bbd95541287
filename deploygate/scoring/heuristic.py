"""
Heuristic Risk Scorer
=====================
Local stand-in for a trained model. Scores a change from weighted risk
factors and converts the weighted 0-100 score to a probability.

Factors:
- Historical failure rate of the service (redis deployment history)
- Target environment criticality
- Change magnitude (descriptor labels)
- Deployment timing
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import redis

from deploygate.errors import InvalidInput, ScorerUnavailable
from deploygate.logging_config import get_logger
from deploygate.models import ChangeDescriptor, RiskAssessment, utcnow
from deploygate.scoring.base import RiskScorer

logger = get_logger(__name__)


@dataclass
class RiskFactor:
    """Individual risk factor contributing to overall score"""
    name: str
    score: float  # 0-100
    weight: float
    details: str


class HeuristicRiskScorer(RiskScorer):
    """Weighted-factor deployment risk scorer"""

    name = "heuristic"

    ENVIRONMENT_SCORES = {
        "production": 80,
        "prod": 80,
        "live": 80,
        "staging": 35,
        "stage": 35,
        "qa": 20,
        "test": 10,
        "dev": 10,
        "development": 10,
    }

    def __init__(self, redis_client=None, now: Callable[[], datetime] = utcnow,
                 history_window: int = 20):
        self.redis = redis_client
        self.now = now
        self.history_window = history_window
        self.weights = {
            "historical_failures": 0.35,
            "environment_criticality": 0.25,
            "change_magnitude": 0.25,
            "deployment_timing": 0.15,
        }

    async def score(self, change: ChangeDescriptor) -> RiskAssessment:
        change.validate()

        factors = [
            self._assess_historical_failures(change.service_name),
            self._assess_environment(change.environment),
            self._assess_change_magnitude(change.labels),
            self._assess_deployment_timing(),
        ]
        overall = sum(f.score * f.weight for f in factors) / sum(f.weight for f in factors)

        assessment = RiskAssessment(
            score=round(min(100.0, max(0.0, overall)) / 100.0, 4),
            model=self.name,
            factors={f.name: round(f.score / 100.0, 4) for f in factors},
        )

        logger.info(
            f"[SCORER] Heuristic assessment for {change.service_name}@{change.revision}: "
            f"{assessment.score:.3f} ({', '.join(f'{f.name}={f.score:.0f}' for f in factors)})"
        )
        return assessment

    def _assess_historical_failures(self, service: str) -> RiskFactor:
        weight = self.weights["historical_failures"]
        if self.redis is None:
            return RiskFactor("historical_failures", 30, weight, "No deployment history store")

        try:
            entries: List = self.redis.lrange(f"deployment_history:{service}", 0, self.history_window - 1)
        except redis.RedisError as e:
            raise ScorerUnavailable("deployment history unavailable", detail=str(e)) from e

        if not entries:
            # Unknown history = moderate risk
            return RiskFactor("historical_failures", 30, weight, "No deployment history available")

        failures = 0
        counted = 0
        for entry in entries:
            try:
                data = json.loads(entry)
            except (TypeError, ValueError):
                logger.debug(f"[SCORER] Skipping unreadable history entry for {service}")
                continue
            if not isinstance(data, dict):
                continue
            counted += 1
            if data.get("failed") or data.get("rolled_back"):
                failures += 1

        if counted == 0:
            return RiskFactor("historical_failures", 30, weight, "Deployment history unreadable")

        failure_rate = failures / counted * 100
        if failure_rate == 0:
            score = 10
        elif failure_rate < 10:
            score = 25
        elif failure_rate < 20:
            score = 45
        elif failure_rate < 30:
            score = 65
        else:
            score = 85

        return RiskFactor(
            "historical_failures", score, weight,
            f"Failure rate: {failure_rate:.1f}% ({failures}/{counted} deployments)",
        )

    def _assess_environment(self, environment: str) -> RiskFactor:
        score = self.ENVIRONMENT_SCORES.get(environment.strip().lower(), 55)
        return RiskFactor(
            "environment_criticality", score, self.weights["environment_criticality"],
            f"Target environment: {environment}",
        )

    def _assess_change_magnitude(self, labels) -> RiskFactor:
        files_changed = self._int_label(labels, "files_changed")
        lines_changed = self._int_label(labels, "lines_changed")

        if files_changed is None and lines_changed is None:
            score = 50
            details = "Change size unknown"
        else:
            files_changed = files_changed or 0
            lines_changed = lines_changed or 0
            if files_changed > 100 or lines_changed > 5000:
                score = 80
            elif files_changed > 30 or lines_changed > 1000:
                score = 60
            elif files_changed > 10 or lines_changed > 250:
                score = 40
            else:
                score = 15
            details = f"{files_changed} files, {lines_changed} lines changed"

        if self._flag_label(labels, "database_migration"):
            score += 20
            details += " (includes database migration)"
        if self._flag_label(labels, "config_change"):
            score += 10
            details += " (includes config changes)"

        return RiskFactor(
            "change_magnitude", min(100, score), self.weights["change_magnitude"], details
        )

    def _assess_deployment_timing(self) -> RiskFactor:
        now = self.now()
        hour = now.hour
        day = now.weekday()  # 0=Monday, 6=Sunday

        if day == 4 and hour >= 14:
            score, details = 85, "Friday afternoon - high risk deployment window"
        elif day >= 5:
            score, details = 70, "Weekend deployment - reduced support availability"
        elif hour >= 22 or hour < 6:
            score, details = 60, "Late night deployment - reduced monitoring"
        elif 9 <= hour <= 18:
            score, details = 45, "Peak hours - higher user impact potential"
        else:
            score, details = 20, "Good deployment window"

        return RiskFactor("deployment_timing", score, self.weights["deployment_timing"], details)

    @staticmethod
    def _int_label(labels, key: str) -> Optional[int]:
        value = labels.get(key)
        if value is None or value == "":
            return None
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            raise InvalidInput(f"label '{key}' must be an integer", detail=str(value))
        if parsed < 0:
            raise InvalidInput(f"label '{key}' must not be negative", detail=str(value))
        return parsed

    @staticmethod
    def _flag_label(labels, key: str) -> bool:
        return str(labels.get(key, "")).strip().lower() in ("1", "true", "yes")
