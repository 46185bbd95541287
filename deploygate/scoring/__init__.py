"""
Scoring Module
==============
Risk scorer adapters that turn a change descriptor into a RiskAssessment.
"""

from .base import RiskScorer
from .heuristic import HeuristicRiskScorer, RiskFactor
from .http_scorer import HttpRiskScorer

__all__ = [
    "RiskScorer",
    "HeuristicRiskScorer",
    "HttpRiskScorer",
    "RiskFactor",
]
