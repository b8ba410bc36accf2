"""
Error Prioritizer
=================
Ranks the current issue set into a work order for the fix phase.

Score Formula:
    base  = severity_multiplier × 25 + component_weight + kind_weight
    score = base × confidence_multiplier × historical_multiplier
            + frequency_bonus + late_iteration_bonus + domain_bonus

    confidence_multiplier  — 1.3 if estimated fixability >= 80, 0.7 if <= 40, else 1.0
    historical_multiplier  — 0.8 + 0.4 × EMA(success) for the issue's component
                             (α = 0.3, 0.5 when the component has no history)
    frequency_bonus        — ln(frequency) × 0.1 × 100 when frequency > 1
    late_iteration_bonus   — +20 for CRITICAL issues after iteration 5
    domain_bonus           — sum of matching business-impact rules

Dependency Adjustment (ranking hint only):
    A likely prerequisite is boosted by dependents × 0.15 × 50; a likely
    side effect is discounted by prerequisites × 10 (floored at zero).

Diversity Filtering:
    At most ceil(width / 2) issues per component and ``width`` per kind
    (``width + 1`` for CRITICAL issues) keep their full score. Issues cut
    by the caps get × 0.3, are flagged ``filtered`` and up to
    min(5, max_issues − kept) of them are re-included.

The ranking is a pure function of (issues, fix history, iteration, width).
"""
import logging
import math
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Sequence

from healer.core.config import DomainBonusRule, PrioritizerConfig
from healer.core.constants import INIT_KIND
from healer.models.issue import Issue
from healer.models.loop_state import FixAttempt

logger = logging.getLogger(__name__)

_SEVERITY_POINTS = 25
_DEPENDENCY_SCALE = 50


@dataclass
class ScoreBreakdown:
    severity: float = 0.0
    component: float = 0.0
    kind: float = 0.0
    base: float = 0.0
    confidence_multiplier: float = 1.0
    historical_multiplier: float = 1.0
    frequency_bonus: float = 0.0
    late_iteration_bonus: float = 0.0
    domain_bonus: float = 0.0
    domain_rules: List[str] = field(default_factory=list)
    dependency_boost: float = 0.0
    side_effect_penalty: float = 0.0
    diversity_discount: float = 1.0
    final: float = 0.0


@dataclass
class RankedIssue:
    issue: Issue
    score: float
    breakdown: ScoreBreakdown
    filtered: bool = False
    filter_reason: Optional[str] = None

    @property
    def key(self) -> str:
        return self.issue.identity_key


def _rule_matches(rule: DomainBonusRule, issue: Issue) -> bool:
    text = issue.message.lower()
    if rule.components and issue.component not in rule.components:
        return False
    if rule.kinds and issue.kind not in rule.kinds:
        return False
    if rule.severities and issue.severity not in rule.severities:
        return False
    if rule.keywords_all and not all(k.lower() in text for k in rule.keywords_all):
        return False
    if rule.keywords_any and not any(k.lower() in text for k in rule.keywords_any):
        return False
    return True


def _sort_key(ranked: RankedIssue):
    return (-ranked.score, ranked.issue.severity_rank, -ranked.issue.frequency)


class ErrorPrioritizer:

    def __init__(self, config: Optional[PrioritizerConfig] = None) -> None:
        self.config = config or PrioritizerConfig()
        self.history: Deque[dict] = deque(maxlen=self.config.history_limit)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def prioritize(
        self,
        issues: Sequence[Issue],
        fix_history: Iterable[FixAttempt] = (),
        iteration: int = 1,
        width: int = 3,
    ) -> List[RankedIssue]:
        """
        Rank ``issues`` for the fix phase.

        Parameters
        ----------
        issues : Sequence[Issue]
            Deduplicated issues from the current detection pass.
        fix_history : Iterable[FixAttempt]
            Past fix outcomes, oldest first (drives the historical multiplier).
        iteration : int
            Current 1-based iteration.
        width : int
            Batch concurrency; sets the diversity caps.

        Returns
        -------
        List[RankedIssue]
            Sorted descending by final score, each with its score trace.
        """
        if not issues:
            return []

        success_rates = self.component_success_rates(fix_history)
        ranked = [self._score(issue, success_rates, iteration) for issue in issues]
        self._apply_dependencies(ranked)
        ranked.sort(key=_sort_key)

        if self.config.diversity_enabled:
            ranked = self._apply_diversity(ranked, width)
        else:
            ranked = ranked[:self.config.max_issues]

        for item in ranked:
            item.breakdown.final = item.score

        self.history.append({
            "iteration": iteration,
            "input": len(issues),
            "output": len(ranked),
            "filtered": sum(1 for r in ranked if r.filtered),
            "top": [r.key for r in ranked[:width]],
        })
        logger.info(
            "Prioritized %d issue(s) → %d ranked (top: %s)",
            len(issues), len(ranked),
            ", ".join(f"{r.issue.component}/{r.issue.kind}={r.score:.1f}" for r in ranked[:3]),
        )
        return ranked

    def component_success_rates(self, fix_history: Iterable[FixAttempt]) -> Dict[str, float]:
        """EMA of fix success per component, recomputed from scratch."""
        alpha = self.config.history_alpha
        rates: Dict[str, float] = {}
        for attempt in fix_history:
            outcome = 1.0 if attempt.success else 0.0
            if attempt.component not in rates:
                rates[attempt.component] = outcome
            else:
                rates[attempt.component] = alpha * outcome + (1 - alpha) * rates[attempt.component]
        return rates

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def _score(self, issue: Issue, success_rates: Dict[str, float], iteration: int) -> RankedIssue:
        cfg = self.config
        b = ScoreBreakdown()
        b.severity = cfg.severity_multipliers.get(issue.severity, 1) * _SEVERITY_POINTS
        b.component = cfg.component_weights.get(issue.component, cfg.default_component_weight)
        b.kind = cfg.kind_weights.get(issue.kind, cfg.default_kind_weight)
        b.base = b.severity + b.component + b.kind

        if issue.estimated_fix_confidence >= cfg.high_confidence_threshold:
            b.confidence_multiplier = cfg.high_confidence_multiplier
        elif issue.estimated_fix_confidence <= cfg.low_confidence_threshold:
            b.confidence_multiplier = cfg.low_confidence_multiplier

        rate = success_rates.get(issue.component, cfg.default_success_rate)
        b.historical_multiplier = 0.8 + rate * 0.4

        if issue.frequency > 1:
            b.frequency_bonus = math.log(issue.frequency) * cfg.frequency_weight * 100

        if issue.severity == "CRITICAL" and iteration > cfg.late_iteration:
            b.late_iteration_bonus = cfg.late_iteration_critical_bonus

        for rule in cfg.bonus_rules:
            if _rule_matches(rule, issue):
                b.domain_bonus += rule.bonus
                b.domain_rules.append(rule.name)

        score = (
            b.base * b.confidence_multiplier * b.historical_multiplier
            + b.frequency_bonus + b.late_iteration_bonus + b.domain_bonus
        )
        return RankedIssue(issue=issue, score=score, breakdown=b)

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------
    def _is_init(self, issue: Issue) -> bool:
        return issue.kind == INIT_KIND or issue.component in self.config.init_components

    def depends_on(self, dependent: Issue, prerequisite: Issue) -> bool:
        """Heuristic: would fixing ``prerequisite`` likely fix ``dependent`` too?"""
        if dependent.identity_key == prerequisite.identity_key:
            return False
        same_component = dependent.component == prerequisite.component
        if same_component and prerequisite.kind == INIT_KIND and dependent.kind == "functional":
            return True
        if same_component and prerequisite.kind == "runtime" and dependent.kind == "console":
            return True
        if self._is_init(prerequisite) and not self._is_init(dependent):
            return True
        related = self.config.component_dependencies.get(dependent.component, [])
        return prerequisite.component in related

    def _apply_dependencies(self, ranked: List[RankedIssue]) -> None:
        dependents: Counter = Counter()
        causes: Counter = Counter()
        for a in ranked:
            for b in ranked:
                if self.depends_on(a.issue, b.issue):
                    dependents[b.key] += 1
                    causes[a.key] += 1

        for item in ranked:
            boost = dependents[item.key] * self.config.dependency_boost_factor * _DEPENDENCY_SCALE
            penalty = causes[item.key] * self.config.side_effect_penalty
            item.breakdown.dependency_boost = boost
            item.breakdown.side_effect_penalty = penalty
            item.score = max(0.0, item.score + boost - penalty)

    # ------------------------------------------------------------------
    # Diversity
    # ------------------------------------------------------------------
    def _apply_diversity(self, ranked: List[RankedIssue], width: int) -> List[RankedIssue]:
        cfg = self.config
        component_counts: Dict[str, int] = defaultdict(int)
        kind_counts: Dict[str, int] = defaultdict(int)
        kept: List[RankedIssue] = []
        cut: List[RankedIssue] = []

        for item in ranked:
            critical = item.issue.severity == "CRITICAL"
            component_cap = width + 1 if critical else math.ceil(width / 2)
            kind_cap = width + 1 if critical else width
            if len(kept) >= cfg.max_issues:
                cut.append(item)
            elif component_counts[item.issue.component] >= component_cap:
                item.filter_reason = f"component cap ({component_cap}) for {item.issue.component}"
                cut.append(item)
            elif kind_counts[item.issue.kind] >= kind_cap:
                item.filter_reason = f"kind cap ({kind_cap}) for {item.issue.kind}"
                cut.append(item)
            else:
                component_counts[item.issue.component] += 1
                kind_counts[item.issue.kind] += 1
                kept.append(item)

        slots = min(cfg.max_reincluded, max(0, cfg.max_issues - len(kept)))
        reincluded = cut[:slots]
        for item in reincluded:
            item.filtered = True
            item.filter_reason = item.filter_reason or "issue cap"
            item.score *= cfg.diversity_discount
            item.breakdown.diversity_discount = cfg.diversity_discount

        if len(cut) > slots:
            logger.debug("Diversity filter dropped %d issue(s)", len(cut) - slots)
        # Re-included issues always rank after the kept ones
        return kept + sorted(reincluded, key=_sort_key)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    def statistics(self) -> Dict[str, float]:
        runs = list(self.history)
        if not runs:
            return {"prioritizations": 0, "average_input": 0.0, "average_filtered": 0.0}
        return {
            "prioritizations": len(runs),
            "average_input": sum(r["input"] for r in runs) / len(runs),
            "average_filtered": sum(r["filtered"] for r in runs) / len(runs),
        }
