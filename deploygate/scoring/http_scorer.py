"""
HTTP Risk Scorer
================
Calls a model-serving endpoint that predicts the failure probability of a
change. The endpoint receives the change descriptor as JSON on
`POST {base_url}/score` and answers with `{"probability": float}` (or
`{"score": float}`). Models that answer on a 0-100 scale are supported
through `score_scale`.
"""

import asyncio
import math
import os
from typing import Dict

import httpx

from deploygate import constants
from deploygate.errors import CircuitOpenError, InvalidInput, ScorerUnavailable
from deploygate.logging_config import get_logger
from deploygate.models import ChangeDescriptor, RiskAssessment
from deploygate.resilience.circuit_breaker import CircuitBreaker
from deploygate.scoring.base import RiskScorer
from deploygate.tracing import attempt_context, outbound_headers, span

logger = get_logger(__name__)


class HttpRiskScorer(RiskScorer):
    """Risk model behind an HTTP endpoint"""

    name = "http_model"

    def __init__(
        self,
        base_url: str = None,
        token: str = None,
        score_scale: float = None,
        timeout: float = None,
        client: httpx.AsyncClient = None,
        breaker: CircuitBreaker = None,
    ):
        self.base_url = (base_url or os.getenv("RISK_MODEL_URL") or "").rstrip("/")
        if not self.base_url:
            raise ValueError("HttpRiskScorer requires a base_url (RISK_MODEL_URL)")
        self.token = token or constants.RISK_MODEL_TOKEN
        self.score_scale = score_scale or constants.RISK_MODEL_SCORE_SCALE
        self.timeout = timeout or constants.RISK_MODEL_TIMEOUT_SECONDS
        self.client = client or httpx.AsyncClient(timeout=self.timeout)
        self.breaker = breaker or CircuitBreaker(
            name="risk_model",
            failure_threshold=constants.SCORER_BREAKER_FAILURE_THRESHOLD,
            recovery_timeout=constants.SCORER_BREAKER_RECOVERY_SECONDS,
            timeout=self.timeout,
            excluded=(InvalidInput,),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", **outbound_headers()}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def score(self, change: ChangeDescriptor) -> RiskAssessment:
        change.validate()

        with span():
            logger.debug(f"[SCORER] Requesting score for revision {change.revision}", extra=attempt_context())
            try:
                body = await self.breaker.call(self._request, change)
            except CircuitOpenError as e:
                raise ScorerUnavailable("risk model circuit open", detail=str(e)) from e
            except asyncio.TimeoutError as e:
                raise ScorerUnavailable(
                    "risk model timed out", detail=f"{self.timeout}s"
                ) from e
            except httpx.HTTPError as e:
                raise ScorerUnavailable(
                    "risk model unreachable", detail=f"{type(e).__name__}: {e}"
                ) from e

        return self._normalize(body)

    async def _request(self, change: ChangeDescriptor) -> Dict:
        response = await self.client.post(
            f"{self.base_url}/score",
            json=change.to_dict(),
            headers=self._headers(),
        )

        if response.status_code in (400, 422):
            raise InvalidInput("risk model rejected the change descriptor", detail=response.text[:200])
        if response.status_code != 200:
            raise ScorerUnavailable(
                f"risk model returned {response.status_code}", detail=response.text[:200]
            )

        try:
            return response.json()
        except ValueError as e:
            raise ScorerUnavailable("risk model returned a non-JSON body") from e

    def _normalize(self, body) -> RiskAssessment:
        if not isinstance(body, dict):
            raise ScorerUnavailable("risk model response is not an object")

        raw = body.get("probability", body.get("score"))
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ScorerUnavailable("risk model response has no numeric probability")

        probability = raw / self.score_scale
        if not math.isfinite(probability) or not 0.0 <= probability <= 1.0:
            raise ScorerUnavailable(
                "risk model returned an out-of-range probability", detail=str(raw)
            )

        factors = body.get("factors") or {}
        assessment = RiskAssessment(
            score=probability,
            model=str(body.get("model") or self.name),
            factors={
                str(k): float(v) for k, v in factors.items()
                if isinstance(v, (int, float)) and not isinstance(v, bool)
            } if isinstance(factors, dict) else {},
        )
        logger.info(f"[SCORER] Model scored change at {assessment.score:.3f}")
        return assessment

    async def aclose(self):
        await self.client.aclose()
