"""
Prometheus Metrics Collection

Counters, histograms and gauges for deployment attempts.
Recording is best-effort and never affects an attempt's outcome.

Usage:
    from deploygate.metrics import ATTEMPT_OUTCOMES, increment_counter, setup_metrics

    setup_metrics(app)
    increment_counter(ATTEMPT_OUTCOMES, {"state": "succeeded", "environment": "production"})
"""

import logging
import os
from contextlib import contextmanager
from typing import Dict

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

logger = logging.getLogger(__name__)


# ============================================================================
# METRIC DEFINITIONS
# ============================================================================

ATTEMPTS_STARTED = Counter(
    'deploygate_attempts_started_total',
    'Deployment attempts accepted by the controller',
    ['environment']
)

ATTEMPT_OUTCOMES = Counter(
    'deploygate_attempt_outcomes_total',
    'Deployment attempts by terminal state',
    ['state', 'environment']
)

STATE_TRANSITIONS = Counter(
    'deploygate_state_transitions_total',
    'State machine transitions',
    ['from_state', 'to_state']
)

SCORER_CALLS = Counter(
    'deploygate_scorer_calls_total',
    'Risk scorer invocations',
    ['result']  # result: success, unavailable, invalid_input
)

ROLLBACKS = Counter(
    'deploygate_rollbacks_total',
    'Rollbacks performed',
    ['result']  # result: success, failed
)

ATTEMPT_DURATION = Histogram(
    'deploygate_attempt_duration_seconds',
    'Wall time from acceptance to terminal state',
    ['state'],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0]
)

ACTIVE_ATTEMPTS = Gauge(
    'deploygate_active_attempts',
    'Attempts not yet in a terminal state'
)

CIRCUIT_BREAKER_STATE = Gauge(
    'deploygate_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half_open, 2=open)',
    ['service']
)

APP_INFO = Info(
    'deploygate_app',
    'Application information'
)
APP_INFO.info({
    'version': '0.1.0',
    'environment': os.getenv('ENVIRONMENT', 'development')
})


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def increment_counter(counter, labels: Dict[str, str], amount: int = 1):
    """Safely increment a counter with labels"""
    try:
        counter.labels(**labels).inc(amount)
    except Exception as e:
        logger.debug(f"[METRICS] Failed to increment counter: {e}")


def observe_latency(histogram, labels: Dict[str, str], duration: float):
    """Safely record a duration observation"""
    try:
        histogram.labels(**labels).observe(duration)
    except Exception as e:
        logger.debug(f"[METRICS] Failed to observe duration: {e}")


def set_gauge(gauge, labels: Dict[str, str], value: float):
    """Safely set a gauge value"""
    try:
        if labels:
            gauge.labels(**labels).set(value)
        else:
            gauge.set(value)
    except Exception as e:
        logger.debug(f"[METRICS] Failed to set gauge: {e}")


@contextmanager
def track_active_attempt():
    """Count an attempt as active for the duration of the block"""
    ACTIVE_ATTEMPTS.inc()
    try:
        yield
    finally:
        ACTIVE_ATTEMPTS.dec()


# ============================================================================
# FASTAPI INTEGRATION
# ============================================================================

def setup_metrics(app) -> None:
    """Add the /metrics endpoint to a FastAPI app"""
    from fastapi import Response

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(
            content=generate_latest(),
            media_type="text/plain; version=0.0.4; charset=utf-8"
        )

    logger.info("[METRICS] Prometheus metrics enabled at /metrics")
