# domainscope/scanner/analyzers/recommendations.py
"""
Recommendation engine.

Turns unmet rule evaluations into prioritized, actionable issues. Reads the
same evaluations the Scorer produced, so a recommendation always corresponds
to a penalty in the score.

Ordering: critical, then important, then suggested; within a tier the rule
catalogue order is kept. Unverified rules produce no recommendation.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Tuple

from domainscope.config import Rule, ScoringPolicy
from domainscope.scanner.models import Recommendation, RuleEvaluation, RuleOutcome

logger = logging.getLogger(__name__)


class RecommendationEngine:
    def __init__(self, policy: ScoringPolicy):
        self.rules: Dict[str, Rule] = {r.id: r for r in policy.rules}
        self._order: Dict[str, int] = {r.id: i for i, r in enumerate(policy.rules)}

    def build(self, evaluations: Iterable[RuleEvaluation]) -> Tuple[Recommendation, ...]:
        seen = set()
        recs: List[Tuple[int, int, Recommendation]] = []
        for ev in evaluations:
            if ev.outcome != RuleOutcome.UNMET or ev.rule_id in seen:
                continue
            rule = self.rules.get(ev.rule_id)
            if rule is None:
                logger.warning(f"Evaluation for unknown rule {ev.rule_id} ignored")
                continue
            seen.add(ev.rule_id)
            recs.append((
                rule.severity.rank,
                self._order[rule.id],
                Recommendation(
                    category=rule.category,
                    severity=rule.severity,
                    issue_key=rule.id,
                    message=rule.message,
                    action=rule.action,
                    impact=rule.impact,
                    effort=rule.effort,
                ),
            ))
        recs.sort(key=lambda item: (item[0], item[1]))
        return tuple(r for _, _, r in recs)
