"""
Convergence Detector
====================
Decides, from the per-iteration error counts, whether the loop is done.

Rules (evaluated in this precedence order):
    1. perfect     — latest count <= zero threshold              (confidence 100)
    2. acceptable  — latest count <= acceptable ceiling          (confidence 90)
    3. stalled     — (max - min) / mean < stall threshold over
                     the last ``stall_detection_window`` samples (confidence 80)
    4. oscillating — coefficient of variation > threshold over
                     the last ``oscillation_window`` samples     (confidence 75)
    5. diminishing — regression slope of improvement rate below
                     ``-threshold``; advisory only, never stops   (confidence 60)

With fewer than ``min_iterations_for_convergence`` samples nothing fires.
Perfect / acceptable / stalled / oscillating count as converged.

Statistics:
    - variance is the sample variance (n - 1)
    - trend is an ordinary least-squares slope with r²
    - improving if slope < -0.1, worsening if slope > 0.1
"""
import logging
import math
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from healer.core.config import ConvergenceConfig
from healer.models.loop_state import ErrorCountSample

logger = logging.getLogger(__name__)

_TREND_SLOPE = 0.1
_CACHE_LIMIT = 64

# Recommendations
STOP_SUCCESS = "stop-success"
STOP_ACCEPTABLE = "stop-acceptable"
STOP_STALLED = "stop-stalled"
STOP_OSCILLATION = "stop-oscillation"
CONSIDER_STOPPING = "consider-stopping"
CONTINUE = "continue"
CONTINUE_CAUTIOUSLY = "continue-cautiously"

STOPPING_RECOMMENDATIONS = frozenset({STOP_SUCCESS, STOP_ACCEPTABLE, STOP_STALLED, STOP_OSCILLATION})


# ---------------------------------------------------------------------------
# Statistics helpers
# ---------------------------------------------------------------------------
def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _sample_variance(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    m = _mean(values)
    return sum((v - m) ** 2 for v in values) / (len(values) - 1)


def linear_regression(values: Sequence[float]) -> Tuple[float, float, float]:
    """Least-squares fit of ``values`` against 0..n-1. Returns (slope, intercept, r²)."""
    n = len(values)
    if n < 2:
        return 0.0, (values[0] if values else 0.0), 0.0
    xs = range(n)
    mean_x = (n - 1) / 2
    mean_y = _mean(values)
    sxx = sum((x - mean_x) ** 2 for x in xs)
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, values))
    slope = sxy / sxx if sxx else 0.0
    intercept = mean_y - slope * mean_x
    ss_tot = sum((y - mean_y) ** 2 for y in values)
    ss_res = sum((y - (intercept + slope * x)) ** 2 for x, y in zip(xs, values))
    r_squared = 1 - ss_res / ss_tot if ss_tot else 1.0
    return slope, intercept, r_squared


def _direction_changes(values: Sequence[float]) -> int:
    changes = 0
    last_direction = 0
    for prev, curr in zip(values, values[1:]):
        direction = (curr > prev) - (curr < prev)
        if direction == 0:
            continue
        if last_direction and direction != last_direction:
            changes += 1
        last_direction = direction
    return changes


# ---------------------------------------------------------------------------
# Analysis result
# ---------------------------------------------------------------------------
@dataclass
class ConvergenceAnalysis:
    iterations: int = 0
    current_errors: Optional[int] = None
    converged: bool = False
    perfect: bool = False
    acceptable: bool = False
    stalled: bool = False
    oscillating: bool = False
    diminishing_returns: bool = False
    rule: Optional[str] = None
    recommendation: str = CONTINUE
    confidence: float = 0.0
    reason: str = ""
    trend: str = "unknown"
    metrics: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class ConvergenceDetector:
    """
    Owns the rules; the samples live in a ring buffer that may be shared
    with ``LoopHistory`` so persistence and analysis see the same data.
    """

    def __init__(
        self,
        config: Optional[ConvergenceConfig] = None,
        history: Optional[Deque[ErrorCountSample]] = None,
    ) -> None:
        self.config = config or ConvergenceConfig()
        self.history: Deque[ErrorCountSample] = history if history is not None else deque(maxlen=200)
        self._cache: Dict[tuple, ConvergenceAnalysis] = {}

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def record_error_count(
        self,
        error_count: int,
        iteration: Optional[int] = None,
        timestamp: Optional[float] = None,
    ) -> ErrorCountSample:
        previous = self.history[-1].error_count if self.history else None
        improvement = previous - error_count if previous is not None else 0
        rate = improvement / previous if previous else 0.0
        sample = ErrorCountSample(
            iteration=iteration if iteration is not None else len(self.history) + 1,
            error_count=error_count,
            improvement=improvement,
            improvement_rate=rate,
            timestamp=timestamp if timestamp is not None else time.time(),
        )
        self.history.append(sample)
        logger.debug(
            "Recorded error count %d (improvement %d, rate %.2f)",
            error_count, improvement, rate,
        )
        return sample

    def reset(self) -> None:
        self.history.clear()
        self._cache.clear()

    # ------------------------------------------------------------------
    # Individual rules
    # ------------------------------------------------------------------
    def check_stall(self, counts: Sequence[int]) -> Dict[str, float]:
        window = list(counts[-self.config.stall_detection_window:])
        if len(window) < self.config.stall_detection_window:
            return {"stalled": False, "ratio": 0.0, "mean": 0.0, "range": 0.0}
        mean = _mean(window)
        spread = max(window) - min(window)
        ratio = spread / mean if mean else 0.0
        return {
            "stalled": ratio < self.config.stall_threshold,
            "ratio": ratio,
            "mean": mean,
            "range": float(spread),
        }

    def check_oscillation(self, counts: Sequence[int]) -> Dict[str, float]:
        window = list(counts[-self.config.oscillation_window:])
        if len(window) < self.config.oscillation_window:
            return {"oscillating": False, "cv": 0.0, "direction_changes": 0, "score": 0.0}
        mean = _mean(window)
        cv = math.sqrt(_sample_variance(window)) / mean if mean else 0.0
        changes = _direction_changes(window)
        return {
            "oscillating": cv > self.config.oscillation_variance_threshold,
            "cv": cv,
            "variance": _sample_variance(window),
            "direction_changes": changes,
            "score": changes / max(1, len(window) - 2),
        }

    def check_diminishing_returns(self, samples: Sequence[ErrorCountSample]) -> Dict[str, float]:
        window = list(samples[-self.config.diminishing_returns_window:])
        if len(window) < self.config.diminishing_returns_window:
            return {"diminishing": False, "slope": 0.0, "average_rate": 0.0}
        rates = [s.improvement_rate for s in window]
        slope, _, r_squared = linear_regression(rates)
        return {
            "diminishing": slope < -self.config.diminishing_returns_threshold,
            "slope": slope,
            "r_squared": r_squared,
            "average_rate": _mean(rates),
        }

    def improvement_trend(self, counts: Sequence[int]) -> Dict[str, float]:
        slope, intercept, r_squared = linear_regression([float(c) for c in counts])
        if slope < -_TREND_SLOPE:
            trend = "improving"
        elif slope > _TREND_SLOPE:
            trend = "worsening"
        else:
            trend = "flat"
        total_improvement = counts[0] - counts[-1] if counts else 0
        return {
            "trend": trend,
            "slope": slope,
            "intercept": intercept,
            "r_squared": r_squared,
            "consistency": r_squared,
            "total_improvement": float(total_improvement),
        }

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------
    def analyze(self, samples: Optional[Sequence[ErrorCountSample]] = None) -> ConvergenceAnalysis:
        """
        Run every rule over ``samples`` (defaults to the recorded history).

        Returns
        -------
        ConvergenceAnalysis
            Flags, the firing rule, recommendation, confidence, reason and
            the numeric evidence behind each rule.
        """
        samples = list(self.history if samples is None else samples)
        counts = [s.error_count for s in samples]
        cache_key = tuple(counts)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        analysis = self._analyze(samples, counts)
        if len(self._cache) >= _CACHE_LIMIT:
            self._cache.clear()
        self._cache[cache_key] = analysis
        return analysis

    def _analyze(self, samples: List[ErrorCountSample], counts: List[int]) -> ConvergenceAnalysis:
        cfg = self.config
        analysis = ConvergenceAnalysis(iterations=len(counts))
        if not counts:
            analysis.reason = "No iterations recorded yet"
            return analysis

        current = counts[-1]
        analysis.current_errors = current

        if len(counts) < cfg.min_iterations_for_convergence:
            analysis.reason = (
                f"Need at least {cfg.min_iterations_for_convergence} iterations "
                f"(have {len(counts)})"
            )
            analysis.confidence = 50
            return analysis

        stall = self.check_stall(counts)
        oscillation = self.check_oscillation(counts)
        diminishing = self.check_diminishing_returns(samples)
        trend = self.improvement_trend(counts)
        analysis.metrics = {
            "stall": stall,
            "oscillation": oscillation,
            "diminishing_returns": diminishing,
            "trend": trend,
        }
        analysis.trend = trend["trend"]

        analysis.perfect = current <= cfg.zero_error_threshold
        analysis.acceptable = current <= cfg.acceptable_error_threshold
        above_acceptable = current > cfg.acceptable_error_threshold
        analysis.stalled = stall["stalled"] and above_acceptable
        analysis.oscillating = oscillation["oscillating"]
        analysis.diminishing_returns = diminishing["diminishing"]

        if analysis.perfect:
            self._decide(analysis, "perfect", STOP_SUCCESS, 100, "All errors resolved")
        elif analysis.acceptable:
            self._decide(
                analysis, "acceptable", STOP_ACCEPTABLE, 90,
                f"Error count {current} within acceptable ceiling "
                f"{cfg.acceptable_error_threshold}",
            )
        elif analysis.stalled:
            self._decide(
                analysis, "stalled", STOP_STALLED, 80,
                f"Error count stalled at ~{stall['mean']:.1f} over the last "
                f"{cfg.stall_detection_window} iterations",
            )
        elif analysis.oscillating:
            self._decide(
                analysis, "oscillating", STOP_OSCILLATION, 75,
                f"Error count oscillating (cv={oscillation['cv']:.2f})",
            )
        elif analysis.diminishing_returns:
            analysis.rule = "diminishing_returns"
            analysis.recommendation = CONSIDER_STOPPING
            analysis.confidence = 60
            analysis.reason = "Improvement rate is shrinking"
        elif trend["trend"] == "improving":
            analysis.recommendation = CONTINUE
            analysis.confidence = 70
            analysis.reason = "Error count still improving"
        else:
            analysis.recommendation = CONTINUE_CAUTIOUSLY
            analysis.confidence = 40
            analysis.reason = f"No convergence yet (trend {trend['trend']})"
        return analysis

    @staticmethod
    def _decide(analysis: ConvergenceAnalysis, rule: str, recommendation: str,
                confidence: float, reason: str) -> None:
        analysis.converged = True
        analysis.rule = rule
        analysis.recommendation = recommendation
        analysis.confidence = confidence
        analysis.reason = reason

    def has_converged(self, samples: Optional[Sequence[ErrorCountSample]] = None) -> bool:
        return self.analyze(samples).converged

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, object]:
        analysis = self.analyze()
        counts = [s.error_count for s in self.history]
        return {
            "iterations": analysis.iterations,
            "current_errors": analysis.current_errors,
            "initial_errors": counts[0] if counts else None,
            "best_errors": min(counts) if counts else None,
            "converged": analysis.converged,
            "rule": analysis.rule,
            "recommendation": analysis.recommendation,
            "trend": analysis.trend,
        }

    def report(self) -> str:
        analysis = self.analyze()
        counts = [s.error_count for s in self.history]
        lines = [
            "Convergence Report",
            "==================",
            f"Iterations:      {analysis.iterations}",
            f"Error counts:    {' -> '.join(str(c) for c in counts) or '-'}",
            f"Converged:       {'yes' if analysis.converged else 'no'}",
            f"Rule:            {analysis.rule or '-'}",
            f"Recommendation:  {analysis.recommendation} ({analysis.confidence:.0f}%)",
            f"Trend:           {analysis.trend}",
            f"Reason:          {analysis.reason}",
        ]
        return "\n".join(lines)
