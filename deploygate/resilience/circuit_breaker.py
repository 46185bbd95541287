"""
Circuit Breaker Pattern Implementation

Provides fault isolation for the HTTP collaborators (risk model, CI status
source). While the circuit is open calls fail fast with CircuitOpenError;
adapters translate that into their own error kind.

Usage:
    from deploygate.resilience.circuit_breaker import CircuitBreaker

    breaker = CircuitBreaker("risk_model", failure_threshold=5)
    result = await breaker.call(client.post, url, json=payload)
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from deploygate.errors import CircuitOpenError
from deploygate.metrics import CIRCUIT_BREAKER_STATE, set_gauge

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # Normal operation, requests pass through
    OPEN = "open"            # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class CircuitBreaker:
    """
    Circuit breaker for external service protection.

    - CLOSED: Normal operation, counts consecutive failures
    - OPEN: Rejects calls with CircuitOpenError
    - HALF_OPEN: Allows a trial call to check recovery

    Attributes:
        name: Identifier for logging and metrics
        failure_threshold: Consecutive failures before opening circuit
        recovery_timeout: Seconds before attempting recovery
        timeout: Max seconds to wait for call completion
        excluded: Exception types that are the caller's fault and do not
            count as failures (e.g. rejected input)
    """

    # Registry of all circuit breakers, exposed by /health
    _registry: Dict[str, 'CircuitBreaker'] = {}

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        timeout: float = 60.0,
        excluded: Tuple[Type[BaseException], ...] = (),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.timeout = timeout
        self.excluded = excluded

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.success_count = 0
        self.total_calls = 0

        CircuitBreaker._registry[name] = self
        self._publish_state()

    def _publish_state(self):
        set_gauge(CIRCUIT_BREAKER_STATE, {"service": self.name}, _STATE_GAUGE_VALUES[self.state])

    def _seconds_until_retry(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.time() - self.last_failure_time))

    def _record_success(self):
        self.failure_count = 0
        self.success_count += 1

        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"[CIRCUIT:{self.name}] Recovery successful, closing circuit")
            self.state = CircuitState.CLOSED
            self._publish_state()

    def _record_failure(self, error: BaseException):
        self.failure_count += 1
        self.last_failure_time = time.time()

        logger.warning(f"[CIRCUIT:{self.name}] Failure #{self.failure_count}: {type(error).__name__}")

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.error(f"[CIRCUIT:{self.name}] Opening circuit after {self.failure_count} failures")
            self.state = CircuitState.OPEN
            self._publish_state()

    async def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Execute an async function with circuit breaker protection.

        Raises:
            CircuitOpenError: the circuit is open and the recovery window
                has not elapsed
            asyncio.TimeoutError: the call exceeded `timeout`
        """
        self.total_calls += 1

        if self.state == CircuitState.OPEN:
            retry_in = self._seconds_until_retry()
            if retry_in > 0:
                logger.debug(f"[CIRCUIT:{self.name}] Circuit open, rejecting call")
                raise CircuitOpenError(self.name, retry_in)
            logger.info(f"[CIRCUIT:{self.name}] Attempting recovery (half-open)")
            self.state = CircuitState.HALF_OPEN
            self._publish_state()

        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"[CIRCUIT:{self.name}] Timeout after {self.timeout}s")
            self._record_failure(e)
            raise
        except self.excluded:
            self._record_success()
            raise
        except Exception as e:
            self._record_failure(e)
            raise

        self._record_success()
        return result

    def reset(self):
        """Force the circuit closed"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self._publish_state()

    def get_status(self) -> Dict[str, Any]:
        """Get circuit breaker status for monitoring"""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "last_failure": datetime.fromtimestamp(self.last_failure_time, tz=timezone.utc).isoformat() if self.last_failure_time else None,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }

    @classmethod
    def get_all_status(cls) -> Dict[str, Dict[str, Any]]:
        """Get status of all registered circuit breakers"""
        return {name: cb.get_status() for name, cb in cls._registry.items()}
