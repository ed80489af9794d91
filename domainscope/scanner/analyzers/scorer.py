# domainscope/scanner/analyzers/scorer.py
"""
Scorer.

Runs after all probes. Evaluates every rule of the scoring policy against
the probe payloads and turns the outcomes into category scores, an overall
score and a letter grade.

Scoring methodology:
    Uses the centralized formulas in domainscope.utils.scoring.

    Rule outcome      Penalty
    met               0
    unmet             points
    unverified        points x unverified_penalty_ratio (default 0.5)

    category score = clip(100 - sum of penalties, 0, 100)
    overall        = weighted mean over every weighted category
    grade          = first threshold the overall reaches, else fallback

A rule is unverified when its probe produced no payload, or when the
payload lacks the field the check needs. Missing data therefore never
earns full credit, and a worse outcome can only lower a score.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from domainscope.config import Rule, ScoringPolicy
from domainscope.scanner.analyzers.checks import CHECKS, Check, get_check
from domainscope.scanner.models import Category, ProbeKind, ProbeResult, RuleEvaluation, RuleOutcome
from domainscope.utils.scoring import category_score, letter_grade, weighted_overall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreCard:
    category_scores: Mapping[Category, float]
    overall: float
    grade: str


class Scorer:
    def __init__(self, policy: ScoringPolicy, checks: Optional[Mapping[str, Check]] = None):
        self.policy = policy
        registry = CHECKS if checks is None else checks
        self._checks: Dict[str, Check] = {}
        for rule in policy.rules:
            chk = get_check(rule.check, registry)
            chk.validate_params(dict(rule.params))
            self._checks[rule.id] = chk

    def check_for(self, rule: Rule) -> Check:
        return self._checks[rule.id]

    # -------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------

    def evaluate_rule(self, rule: Rule, results: Mapping[ProbeKind, ProbeResult]) -> RuleOutcome:
        chk = self._checks[rule.id]
        result = results.get(chk.requires)
        if result is None or not result.ok:
            return RuleOutcome.UNVERIFIED

        try:
            answer = chk(result.data, **rule.params)
        except Exception:
            logger.exception(f"Check '{chk.name}' crashed evaluating rule {rule.id}")
            return RuleOutcome.UNVERIFIED

        if answer is None:
            return RuleOutcome.UNVERIFIED
        return RuleOutcome.MET if answer else RuleOutcome.UNMET

    def evaluate(self, results: Mapping[ProbeKind, ProbeResult]) -> Tuple[RuleEvaluation, ...]:
        """One evaluation per rule, in catalogue order."""
        evaluations = []
        for rule in self.policy.rules:
            evaluations.append(RuleEvaluation(
                rule_id=rule.id,
                category=rule.category,
                severity=rule.severity,
                points=rule.points,
                outcome=self.evaluate_rule(rule, results),
            ))
        return tuple(evaluations)

    # -------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------

    def penalty(self, evaluation: RuleEvaluation) -> float:
        if evaluation.outcome == RuleOutcome.UNMET:
            return evaluation.points
        if evaluation.outcome == RuleOutcome.UNVERIFIED:
            return evaluation.points * self.policy.unverified_penalty_ratio
        return 0.0

    def score(self, evaluations: Tuple[RuleEvaluation, ...]) -> ScoreCard:
        penalties: Dict[Category, list] = {cat: [] for cat in self.policy.weights}
        for ev in evaluations:
            penalties.setdefault(ev.category, []).append(self.penalty(ev))

        scores = {cat: category_score(p) for cat, p in penalties.items()}
        overall = weighted_overall(scores, self.policy.weights)
        grade = letter_grade(
            overall,
            [(g.min_score, g.grade) for g in self.policy.grades],
            fallback=self.policy.fallback_grade,
        )

        unverified = sum(1 for ev in evaluations if ev.outcome == RuleOutcome.UNVERIFIED)
        unmet = sum(1 for ev in evaluations if ev.outcome == RuleOutcome.UNMET)
        logger.debug(f"Scored {len(evaluations)} rules: {unmet} unmet, {unverified} unverified -> {overall} ({grade})")
        return ScoreCard(category_scores=scores, overall=overall, grade=grade)
