"""
Convergence Detector Tests
==========================
Stall / oscillation / perfect boundaries, rule precedence and the
regression helper.
"""
import pytest

from healer.core.config import ConvergenceConfig
from healer.services.convergence_detector import (
    CONTINUE,
    STOP_ACCEPTABLE,
    STOP_OSCILLATION,
    STOP_STALLED,
    STOP_SUCCESS,
    ConvergenceDetector,
    linear_regression,
)


def _detector_with(counts, **config):
    detector = ConvergenceDetector(ConvergenceConfig(**config))
    for i, count in enumerate(counts, start=1):
        detector.record_error_count(count, iteration=i, timestamp=float(i))
    return detector


# ---------------------------------------------------------------------------
# Boundary sequences
# ---------------------------------------------------------------------------
class TestBoundaries:

    def test_flat_sequence_is_stalled(self):
        analysis = _detector_with([10, 10, 10]).analyze()
        assert analysis.converged is True
        assert analysis.stalled is True
        assert analysis.rule == "stalled"
        assert analysis.recommendation == STOP_STALLED
        assert analysis.confidence == 80

    def test_alternating_sequence_is_oscillating(self):
        analysis = _detector_with([10, 2, 10, 2, 10]).analyze()
        assert analysis.converged is True
        assert analysis.oscillating is True
        assert analysis.stalled is False
        assert analysis.rule == "oscillating"
        assert analysis.recommendation == STOP_OSCILLATION
        assert analysis.metrics["oscillation"]["cv"] > 0.3

    def test_reaching_zero_is_perfect(self):
        analysis = _detector_with([10, 5, 0]).analyze()
        assert analysis.converged is True
        assert analysis.perfect is True
        assert analysis.rule == "perfect"
        assert analysis.recommendation == STOP_SUCCESS
        assert analysis.confidence == 100

    def test_steady_improvement_keeps_going(self):
        analysis = _detector_with([20, 15, 10]).analyze()
        assert analysis.converged is False
        assert analysis.recommendation == CONTINUE
        assert analysis.trend == "improving"


class TestRules:

    def test_single_sample_never_converges(self):
        detector = _detector_with([0])
        assert detector.has_converged() is False
        assert "at least 2" in detector.analyze().reason

    def test_acceptable_ceiling(self):
        analysis = _detector_with([9, 3], acceptable_error_threshold=3).analyze()
        assert analysis.acceptable is True
        assert analysis.recommendation == STOP_ACCEPTABLE

    def test_flat_within_acceptable_ceiling_is_acceptable_not_stalled(self):
        analysis = _detector_with([2, 2, 2], acceptable_error_threshold=2).analyze()
        assert analysis.rule == "acceptable"
        assert analysis.stalled is False

    def test_perfect_wins_over_oscillation(self):
        analysis = _detector_with([10, 0, 10, 0, 0]).analyze()
        assert analysis.rule == "perfect"

    def test_improvement_is_recorded_on_samples(self):
        detector = _detector_with([10, 6])
        latest = detector.history[-1]
        assert latest.improvement == 4
        assert latest.improvement_rate == pytest.approx(0.4)

    def test_analysis_is_cached_per_count_sequence(self):
        detector = _detector_with([10, 10, 10])
        assert detector.analyze() is detector.analyze()
        detector.record_error_count(4)
        assert detector.analyze().stalled is False

    def test_reset_clears_samples(self):
        detector = _detector_with([10, 10, 10])
        detector.reset()
        assert len(detector.history) == 0
        assert detector.has_converged() is False


class TestReporting:

    def test_status_summary(self):
        status = _detector_with([12, 8, 8, 8]).status()
        assert status["initial_errors"] == 12
        assert status["best_errors"] == 8
        assert status["current_errors"] == 8
        assert status["converged"] is True

    def test_text_report_mentions_counts(self):
        report = _detector_with([5, 3]).report()
        assert "5 -> 3" in report
        assert "Convergence Report" in report


def test_linear_regression_on_a_line():
    slope, intercept, r2 = linear_regression([1.0, 3.0, 5.0, 7.0])
    assert slope == pytest.approx(2.0)
    assert intercept == pytest.approx(1.0)
    assert r2 == pytest.approx(1.0)
