"""Score math, rule evaluation and grade boundaries."""

from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Dict

import pytest

from domainscope.config import ScoringPolicy, parse_scoring_policy
from domainscope.errors import ConfigError
from domainscope.scanner.analyzers import CHECKS, Check, Scorer
from domainscope.scanner.models import (
    BlacklistResult,
    Category,
    ProbeKind,
    ProbeResult,
    ProbeStatus,
    RuleOutcome,
    TlsResult,
)
from domainscope.utils.scoring import category_score, letter_grade, weighted_overall


# ---------------------------------------------------------------------------
# Formulas
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("score,grade", [(95, "A"), (90, "A"), (89.9, "B"), (72, "C"), (60, "D"), (40, "F")])
def test_letter_grade_boundaries(score: float, grade: str) -> None:
    assert letter_grade(score) == grade


def test_category_score_clips() -> None:
    assert category_score([]) == 100.0
    assert category_score([30, 20]) == 50.0
    assert category_score([80, 80]) == 0.0


def test_weighted_overall_counts_missing_categories_as_zero() -> None:
    weights = {"a": 3, "b": 1}
    assert weighted_overall({"a": 100, "b": 100}, weights) == 100.0
    assert weighted_overall({"a": 100}, weights) == 75.0


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------

def _policy(points: float, extra_rules=()) -> ScoringPolicy:
    return parse_scoring_policy({
        "weights": {"reputation": 1},
        "grades": [{"min": 90, "grade": "A"}, {"min": 80, "grade": "B"},
                   {"min": 70, "grade": "C"}, {"min": 60, "grade": "D"}],
        "rules": [
            {"id": "listed", "category": "reputation", "severity": "critical", "points": points,
             "check": "blacklist.not_listed", "message": "Listed", "action": "Delist"},
            *extra_rules,
        ],
    })


def _blacklist(listed: int, status: ProbeStatus = ProbeStatus.SUCCESS) -> Dict[ProbeKind, ProbeResult]:
    data = BlacklistResult(ips=("192.0.2.1",), checked=20, listed=listed)
    return {ProbeKind.BLACKLIST: ProbeResult(kind=ProbeKind.BLACKLIST, status=status, data=data)}


@pytest.mark.parametrize("points,overall,grade", [(5, 95.0, "A"), (28, 72.0, "C"), (60, 40.0, "F")])
def test_unmet_rule_grades(points: float, overall: float, grade: str) -> None:
    scorer = Scorer(_policy(points))
    card = scorer.score(scorer.evaluate(_blacklist(listed=1)))
    assert card.category_scores[Category.REPUTATION] == overall
    assert card.overall == overall
    assert card.grade == grade


def test_met_rule_has_no_penalty() -> None:
    scorer = Scorer(_policy(60))
    card = scorer.score(scorer.evaluate(_blacklist(listed=0)))
    assert card.overall == 100.0
    assert card.grade == "A"


def test_missing_probe_is_unverified_at_half_penalty() -> None:
    scorer = Scorer(_policy(40))
    evaluations = scorer.evaluate({})
    assert evaluations[0].outcome == RuleOutcome.UNVERIFIED
    assert scorer.score(evaluations).overall == 80.0


def test_failed_probe_is_unverified() -> None:
    scorer = Scorer(_policy(40))
    results = {ProbeKind.BLACKLIST: ProbeResult(kind=ProbeKind.BLACKLIST, status=ProbeStatus.FAILED)}
    assert scorer.evaluate(results)[0].outcome == RuleOutcome.UNVERIFIED


def test_partial_probe_data_is_still_evaluated() -> None:
    scorer = Scorer(_policy(40))
    evaluations = scorer.evaluate(_blacklist(listed=1, status=ProbeStatus.PARTIAL))
    assert evaluations[0].outcome == RuleOutcome.UNMET


def test_predicate_returning_none_is_unverified() -> None:
    policy = parse_scoring_policy({
        "weights": {"security": 1},
        "rules": [{"id": "chain", "category": "security", "severity": "important", "points": 20,
                   "check": "tls.trusted_chain"}],
    })
    scorer = Scorer(policy)
    results = {ProbeKind.TLS: ProbeResult(
        kind=ProbeKind.TLS, status=ProbeStatus.PARTIAL, data=TlsResult(host="example.com", port=443),
    )}
    assert scorer.evaluate(results)[0].outcome == RuleOutcome.UNVERIFIED


def test_crashing_predicate_is_unverified() -> None:
    def boom(payload) -> bool:
        raise RuntimeError("bad payload")

    registry = dict(CHECKS)
    registry["blacklist.not_listed"] = Check("blacklist.not_listed", ProbeKind.BLACKLIST, boom)
    scorer = Scorer(_policy(40), checks=registry)
    assert scorer.evaluate(_blacklist(listed=0))[0].outcome == RuleOutcome.UNVERIFIED


def test_unknown_check_rejected_at_load() -> None:
    bad = parse_scoring_policy({
        "weights": {"security": 1},
        "rules": [{"id": "x", "category": "security", "severity": "critical", "points": 1,
                   "check": "headers.does_not_exist"}],
    })
    with pytest.raises(ConfigError, match="Unknown check"):
        Scorer(bad)


def test_unexpected_params_rejected_at_load() -> None:
    bad = parse_scoring_policy({
        "weights": {"security": 1},
        "rules": [{"id": "x", "category": "security", "severity": "critical", "points": 1,
                   "check": "headers.served_over_https", "params": {"port": 443}}],
    })
    with pytest.raises(ConfigError, match="does not accept"):
        Scorer(bad)


def test_bundled_policy_loads(reference_data) -> None:
    scorer = Scorer(reference_data.scoring)
    assert len(scorer.evaluate({})) == len(reference_data.scoring.rules)


def test_score_is_monotonic_in_outcomes(reference_data) -> None:
    """Turning any outcome worse (met -> unverified -> unmet) never raises a score."""
    scorer = Scorer(reference_data.scoring)
    base = list(scorer.evaluate({}))
    order = [RuleOutcome.MET, RuleOutcome.UNVERIFIED, RuleOutcome.UNMET]

    for index, (better, worse) in itertools.product(range(len(base)), itertools.combinations(order, 2)):
        good = list(base)
        bad = list(base)
        good[index] = replace(base[index], outcome=better)
        bad[index] = replace(base[index], outcome=worse)
        good_card = scorer.score(tuple(good))
        bad_card = scorer.score(tuple(bad))
        assert bad_card.overall <= good_card.overall
        for category in good_card.category_scores:
            assert bad_card.category_scores[category] <= good_card.category_scores[category]
