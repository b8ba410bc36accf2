"""
Error Prioritizer Tests
=======================
Scoring, tie-breaking, history weighting, dependency hints and the
diversity cap (8 issues split 5/3 across two components).
"""
import pytest

from healer.core.config import PrioritizerConfig
from healer.models.issue import ConsoleIssue, FunctionalIssue, InitializationIssue, RuntimeIssue
from healer.models.loop_state import FixAttempt
from healer.services.error_prioritizer import ErrorPrioritizer


def _functional(component, message, severity="MEDIUM", **kwargs):
    return FunctionalIssue(component=component, message=message, severity=severity, **kwargs)


def _eight_issues():
    persistence = [_functional("persistence", f"record {i} not stored after submit") for i in range(5)]
    network = [_functional("network", f"request {i} returned stale payload") for i in range(3)]
    return persistence + network


class TestScoring:

    def test_critical_high_weight_outranks_medium_default_weight(self):
        critical = _functional("persistence", "saved profile vanished", severity="CRITICAL")
        medium = ConsoleIssue(component="sidebar", message="deprecated API warning", severity="MEDIUM")
        ranked = ErrorPrioritizer().prioritize([medium, critical])
        assert ranked[0].issue is critical
        assert ranked[0].score > ranked[1].score

    def test_score_formula_for_plain_issue(self):
        issue = _functional("persistence", "record not stored")
        ranked = ErrorPrioritizer().prioritize([issue])
        # (2*25 + 90 + 85) * 1.0 * (0.8 + 0.4*0.5)
        assert ranked[0].score == pytest.approx(225.0)
        assert ranked[0].breakdown.base == pytest.approx(225.0)

    def test_confidence_multipliers(self):
        high = _functional("network", "high confidence", estimated_fix_confidence=90)
        low = _functional("network", "low confidence", estimated_fix_confidence=30)
        ranked = {r.issue.message: r for r in ErrorPrioritizer().prioritize([high, low])}
        assert ranked["high confidence"].breakdown.confidence_multiplier == 1.3
        assert ranked["low confidence"].breakdown.confidence_multiplier == 0.7

    def test_frequency_bonus_is_logarithmic(self):
        issue = _functional("network", "flaky", frequency=10)
        ranked = ErrorPrioritizer().prioritize([issue])
        assert ranked[0].breakdown.frequency_bonus == pytest.approx(23.02585, rel=1e-4)

    def test_late_iteration_bonus_only_for_critical(self):
        critical = _functional("network", "late critical", severity="CRITICAL")
        early = ErrorPrioritizer().prioritize([critical], iteration=2)[0]
        late = ErrorPrioritizer().prioritize([critical], iteration=6)[0]
        assert late.score - early.score == pytest.approx(20.0)

    def test_domain_bonus_rule_matches_runtime_persistence(self):
        issue = RuntimeIssue(component="persistence", message="write failed")
        ranked = ErrorPrioritizer().prioritize([issue])
        assert "data-integrity" in ranked[0].breakdown.domain_rules
        assert ranked[0].breakdown.domain_bonus == pytest.approx(40.0)

    def test_ties_break_on_frequency(self):
        once = _functional("ui", "tie once")
        often = _functional("ui", "tie often", frequency=4)
        config = PrioritizerConfig(frequency_weight=0)
        ranked = ErrorPrioritizer(config).prioritize([once, often])
        assert ranked[0].issue.message == "tie often"


class TestHistory:

    def test_failed_history_lowers_component_multiplier(self):
        history = [
            FixAttempt(issue_key=f"k{i}", kind="functional", component="network", success=False)
            for i in range(4)
        ]
        prioritizer = ErrorPrioritizer()
        rates = prioritizer.component_success_rates(history)
        assert rates["network"] < 0.5
        ranked = prioritizer.prioritize([_functional("network", "after failures")], fix_history=history)
        assert ranked[0].breakdown.historical_multiplier < 1.0


class TestDependencies:

    def test_initialization_issue_is_boosted_as_prerequisite(self):
        init = InitializationIssue(component="app-init", message="store never initialised")
        dependent = _functional("ui", "button does nothing")
        prioritizer = ErrorPrioritizer()
        assert prioritizer.depends_on(dependent, init) is True
        ranked = {r.issue.kind: r for r in prioritizer.prioritize([init, dependent])}
        assert ranked["initialization"].breakdown.dependency_boost == pytest.approx(7.5)
        assert ranked["functional"].breakdown.side_effect_penalty == pytest.approx(10.0)


class TestDiversity:

    def test_cap_interleaves_components(self):
        ranked = ErrorPrioritizer().prioritize(_eight_issues(), width=3)
        assert len(ranked) == 8
        components = [r.issue.component for r in ranked]
        assert components[:3] == ["persistence", "persistence", "network"]
        assert [r.filtered for r in ranked[:3]] == [False, False, False]
        assert all(r.filtered for r in ranked[3:])
        assert sum(1 for r in ranked if r.filtered) == 5
        assert ranked[0].score == pytest.approx(225.0)
        assert ranked[2].score == pytest.approx(185.0)
        assert ranked[3].score == pytest.approx(67.5)
        assert ranked[-1].score == pytest.approx(55.5)

    def test_without_cap_one_component_dominates(self):
        config = PrioritizerConfig(diversity_enabled=False)
        ranked = ErrorPrioritizer(config).prioritize(_eight_issues(), width=3)
        assert [r.issue.component for r in ranked[:5]] == ["persistence"] * 5
        assert not any(r.filtered for r in ranked)

    def test_reincluded_issues_rank_after_kept_ones(self):
        config = PrioritizerConfig(diversity_discount=1.0)
        ranked = ErrorPrioritizer(config).prioritize(_eight_issues(), width=3)
        components = [r.issue.component for r in ranked]
        assert components == ["persistence", "persistence", "network",
                              "persistence", "persistence", "persistence", "network", "network"]
        # undiscounted persistence scores stay behind the kept network issue
        assert ranked[3].score > ranked[2].score
        assert [r.filtered for r in ranked[3:]] == [True] * 5

    def test_statistics_track_runs(self):
        prioritizer = ErrorPrioritizer()
        prioritizer.prioritize(_eight_issues(), width=3)
        stats = prioritizer.statistics()
        assert stats["prioritizations"] == 1
        assert stats["average_input"] == 8
        assert stats["average_filtered"] == 5


def test_empty_input():
    assert ErrorPrioritizer().prioritize([]) == []
