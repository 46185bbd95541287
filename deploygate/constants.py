"""
System Constants and Configuration Values

Centralizes the environment-driven defaults consumed by DeployGate.
PipelineConfig (deploygate.config) validates the gating values; the
adapter settings are read directly by the adapters.

Usage:
    from deploygate.constants import (
        RISK_THRESHOLD,
        MONITORING_TIMEOUT_SECONDS,
        ...
    )
"""

import os

# ============================================================================
# GATING
# ============================================================================

# Scores strictly above this probability abort the attempt
RISK_THRESHOLD = float(os.getenv("RISK_THRESHOLD", "0.5"))

# Retries after the first scorer call (total calls = limit + 1)
SCORER_RETRY_LIMIT = int(os.getenv("SCORER_RETRY_LIMIT", "2"))
SCORER_RETRY_BACKOFF_SECONDS = float(os.getenv("SCORER_RETRY_BACKOFF_SECONDS", "1.0"))

# ============================================================================
# MONITORING
# ============================================================================

MONITORING_TIMEOUT_SECONDS = float(os.getenv("MONITORING_TIMEOUT_SECONDS", "600"))  # 10 minutes
MONITORING_POLL_INTERVAL_SECONDS = float(os.getenv("MONITORING_POLL_INTERVAL_SECONDS", "10"))

# Roll back when the backend itself reports the workload as errored
WATCH_BACKEND_HEALTH = os.getenv("WATCH_BACKEND_HEALTH", "true").lower() == "true"

# ============================================================================
# ADAPTERS
# ============================================================================

DRY_RUN_MODE = os.getenv("DRY_RUN_MODE", "false").lower() == "true"

# Risk model serving endpoint; the heuristic scorer is used when unset
RISK_MODEL_URL = os.getenv("RISK_MODEL_URL")
RISK_MODEL_TOKEN = os.getenv("RISK_MODEL_TOKEN")
RISK_MODEL_SCORE_SCALE = float(os.getenv("RISK_MODEL_SCORE_SCALE", "1.0"))
RISK_MODEL_TIMEOUT_SECONDS = float(os.getenv("RISK_MODEL_TIMEOUT_SECONDS", "30"))

JENKINS_URL = os.getenv("JENKINS_URL", "http://localhost:8080")
JENKINS_USER = os.getenv("JENKINS_USER")
JENKINS_TOKEN = os.getenv("JENKINS_TOKEN")
JENKINS_TIMEOUT_SECONDS = float(os.getenv("JENKINS_TIMEOUT_SECONDS", "10"))

DOCKER_BINARY = os.getenv("DOCKER_BINARY", "docker")
DOCKER_STOP_TIMEOUT_SECONDS = int(os.getenv("DOCKER_STOP_TIMEOUT_SECONDS", "10"))
# Upper bound on any single docker CLI invocation; the process is killed past it
DOCKER_COMMAND_TIMEOUT_SECONDS = float(os.getenv("DOCKER_COMMAND_TIMEOUT_SECONDS", "60"))

# ============================================================================
# CIRCUIT BREAKERS
# ============================================================================

SCORER_BREAKER_FAILURE_THRESHOLD = int(os.getenv("SCORER_BREAKER_FAILURE_THRESHOLD", "5"))
SCORER_BREAKER_RECOVERY_SECONDS = float(os.getenv("SCORER_BREAKER_RECOVERY_SECONDS", "30"))
FEED_BREAKER_FAILURE_THRESHOLD = int(os.getenv("FEED_BREAKER_FAILURE_THRESHOLD", "5"))
FEED_BREAKER_RECOVERY_SECONDS = float(os.getenv("FEED_BREAKER_RECOVERY_SECONDS", "30"))

# ============================================================================
# REDIS JOURNAL
# ============================================================================

REDIS_URL = os.getenv("REDIS_URL")
ATTEMPT_RECORD_TTL_SECONDS = int(os.getenv("ATTEMPT_RECORD_TTL_SECONDS", "604800"))  # 7 days
DEPLOYMENT_HISTORY_LIMIT = int(os.getenv("DEPLOYMENT_HISTORY_LIMIT", "100"))
