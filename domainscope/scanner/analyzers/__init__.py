# domainscope/scanner/analyzers/__init__.py
"""
Rule evaluation and recommendations.
Analyzers read probe payloads and judge them against the scoring policy.
Analyzers do NOT collect data; they only interpret it.
"""
from domainscope.scanner.analyzers.checks import CHECKS, Check, check, get_check
from domainscope.scanner.analyzers.recommendations import RecommendationEngine
from domainscope.scanner.analyzers.scorer import ScoreCard, Scorer

__all__ = [
    "CHECKS", "Check", "check", "get_check",
    "RecommendationEngine", "ScoreCard", "Scorer",
]
