"""
Jenkins Status Feed
===================
Reads build results from the Jenkins JSON API:

    GET {JENKINS_URL}/job/<job>/<build>/api/json

Folder jobs are addressed as "folder/job". Transport failures, server
errors and unknown builds all read as UNKNOWN; the state machine keeps
polling until its monitoring timeout.
"""

import asyncio
from typing import Dict, Optional

import httpx

from deploygate import constants
from deploygate.errors import CircuitOpenError
from deploygate.feeds.base import StatusFeed
from deploygate.logging_config import get_logger
from deploygate.models import BuildResult, BuildStatus
from deploygate.resilience.circuit_breaker import CircuitBreaker
from deploygate.tracing import outbound_headers

logger = get_logger(__name__)

# Jenkins build result -> BuildResult
_RESULT_MAP = {
    "SUCCESS": BuildResult.SUCCESS,
    "FAILURE": BuildResult.FAILURE,
    "UNSTABLE": BuildResult.FAILURE,
    "ABORTED": BuildResult.FAILURE,
    "NOT_BUILT": BuildResult.UNKNOWN,
}


class JenkinsStatusFeed(StatusFeed):
    """Jenkins build status via the JSON API"""

    name = "jenkins"

    def __init__(
        self,
        base_url: str = None,
        user: str = None,
        token: str = None,
        timeout: float = None,
        client: httpx.AsyncClient = None,
        breaker: CircuitBreaker = None,
    ):
        self.base_url = (base_url or constants.JENKINS_URL).rstrip("/")
        self.user = user or constants.JENKINS_USER
        self.token = token or constants.JENKINS_TOKEN
        self.timeout = timeout or constants.JENKINS_TIMEOUT_SECONDS

        auth = (self.user, self.token) if self.user and self.token else None
        self.client = client or httpx.AsyncClient(timeout=self.timeout, auth=auth)
        self.breaker = breaker or CircuitBreaker(
            name="jenkins",
            failure_threshold=constants.FEED_BREAKER_FAILURE_THRESHOLD,
            recovery_timeout=constants.FEED_BREAKER_RECOVERY_SECONDS,
            timeout=self.timeout,
        )

    def build_url(self, job_id: str, build_id: str) -> str:
        job_path = "/job/".join(part for part in job_id.strip("/").split("/") if part)
        return f"{self.base_url}/job/{job_path}/{build_id}/api/json"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", **outbound_headers()}
        if self.token and not self.user:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def latest(self, job_id: str, build_id: str) -> BuildStatus:
        try:
            data = await self.breaker.call(self._fetch, job_id, build_id)
        except CircuitOpenError as e:
            logger.debug(f"[JENKINS] {e}")
            data = None
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.warning(f"[JENKINS] Status read failed for {job_id}#{build_id}: {type(e).__name__}: {e}")
            data = None

        return BuildStatus(
            job_id=job_id,
            build_id=build_id,
            result=self._parse(data),
            url=data.get("url") if data else None,
        )

    async def _fetch(self, job_id: str, build_id: str) -> Optional[Dict]:
        response = await self.client.get(
            self.build_url(job_id, build_id),
            params={"tree": "building,result,url"},
            headers=self._headers(),
        )

        if response.status_code == 404:
            # Build not registered yet
            return None
        if response.status_code in (401, 403):
            logger.error(f"[JENKINS] Access denied reading {job_id}#{build_id} ({response.status_code})")
            return None
        response.raise_for_status()

        try:
            body = response.json()
        except ValueError:
            logger.warning(f"[JENKINS] Non-JSON response for {job_id}#{build_id}")
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _parse(data: Optional[Dict]) -> BuildResult:
        if not data:
            return BuildResult.UNKNOWN
        if data.get("building"):
            return BuildResult.RUNNING
        result = data.get("result")
        if result is None:
            return BuildResult.UNKNOWN
        return _RESULT_MAP.get(str(result).upper(), BuildResult.UNKNOWN)

    async def aclose(self):
        await self.client.aclose()
