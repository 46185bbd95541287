"""
Scripted status feed for dry runs: replays a fixed sequence of results.
"""

from typing import Dict, Iterable, List, Tuple

from deploygate.feeds.base import StatusFeed
from deploygate.models import BuildResult, BuildStatus


class ScriptedStatusFeed(StatusFeed):
    """
    Returns the scripted results in order, one per poll, then repeats the
    last one. Each (job, build) pair has its own cursor.
    """

    name = "scripted"

    def __init__(self, results: Iterable[BuildResult] = (BuildResult.SUCCESS,)):
        self.results: List[BuildResult] = [BuildResult(r) for r in results]
        self.polls: Dict[Tuple[str, str], int] = {}

    async def latest(self, job_id: str, build_id: str) -> BuildStatus:
        key = (job_id, build_id)
        index = self.polls.get(key, 0)
        self.polls[key] = index + 1

        if not self.results:
            result = BuildResult.UNKNOWN
        else:
            result = self.results[min(index, len(self.results) - 1)]
        return BuildStatus(job_id=job_id, build_id=build_id, result=result)

    @property
    def total_polls(self) -> int:
        return sum(self.polls.values())
