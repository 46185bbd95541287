"""
StatusFeed - read-only view of CI build status
"""

from abc import ABC, abstractmethod

from deploygate.models import BuildStatus


class StatusFeed(ABC):
    """
    Non-blocking read of the most recent known build status.

    Absence of data is not an error: implementations return an UNKNOWN (or
    RUNNING) status instead of raising.
    """

    name = "feed"

    @abstractmethod
    async def latest(self, job_id: str, build_id: str) -> BuildStatus:
        pass

    async def aclose(self):
        """Release transport resources"""
        return None
