"""
Dry-run backend: simulates workloads in memory so the full gating loop can
be exercised without touching a container runtime.
"""

import asyncio
from typing import Dict

from deploygate.backends.base import DeploymentBackend
from deploygate.errors import BackendCreateFailed, BackendStartFailed, BackendStopFailed
from deploygate.logging_config import get_logger
from deploygate.models import BackendStatus, ChangeDescriptor

logger = get_logger(__name__)


class DryRunBackend(DeploymentBackend):
    """
    In-memory backend.

    The fail_* switches make the matching operation raise, which lets the
    failure paths be rehearsed end to end.
    """

    name = "dry_run"

    def __init__(self, fail_create: bool = False, fail_start: bool = False,
                 fail_stop: bool = False, start_delay: float = 0.0):
        self.fail_create = fail_create
        self.fail_start = fail_start
        self.fail_stop = fail_stop
        self.start_delay = start_delay

        self.create_calls = 0
        self.start_calls = 0
        self.stop_calls = 0
        self.handles: Dict[str, str] = {}
        self.resources: Dict[str, BackendStatus] = {}

    async def create(self, attempt_id: str, change: ChangeDescriptor) -> str:
        self.create_calls += 1
        if attempt_id in self.handles:
            return self.handles[attempt_id]
        if self.fail_create:
            raise BackendCreateFailed(f"simulated create failure for {attempt_id}")

        handle = f"dryrun-{attempt_id}"
        self.handles[attempt_id] = handle
        self.resources[handle] = BackendStatus.STARTING
        logger.info(f"[DRY RUN] Would create {change.content_ref} as {handle}")
        return handle

    async def start(self, handle: str) -> None:
        self.start_calls += 1
        if handle not in self.resources:
            raise BackendStartFailed(f"unknown handle {handle}")
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.fail_start:
            self.resources[handle] = BackendStatus.ERRORED
            raise BackendStartFailed(f"simulated start failure for {handle}")

        self.resources[handle] = BackendStatus.RUNNING
        logger.info(f"[DRY RUN] Would start {handle}")

    async def stop(self, handle: str) -> None:
        self.stop_calls += 1
        if self.fail_stop:
            raise BackendStopFailed(f"simulated stop failure for {handle}")
        if handle in self.resources:
            self.resources[handle] = BackendStatus.STOPPED
        logger.info(f"[DRY RUN] Would stop {handle}")

    async def status(self, handle: str) -> BackendStatus:
        return self.resources.get(handle, BackendStatus.UNKNOWN)
