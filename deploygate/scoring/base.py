"""
RiskScorer - interface to the external change-risk predictor
"""

from abc import ABC, abstractmethod

from deploygate.models import ChangeDescriptor, RiskAssessment


class RiskScorer(ABC):
    """
    Black-box scorer: change descriptor in, failure probability out.

    Implementations raise InvalidInput for malformed descriptors and
    ScorerUnavailable for transport or model failures. They never retry
    internally and never return a sentinel score.
    """

    name = "scorer"

    @abstractmethod
    async def score(self, change: ChangeDescriptor) -> RiskAssessment:
        """Score a change; must be safe to call concurrently"""
        pass

    async def aclose(self):
        """Release transport resources"""
        return None
