"""
Safety Mechanisms
=================
Guardrails that can stop the loop, skip an issue or veto a fix.

All mutable safety data lives in one explicit ``SafetyState`` guarded by a
lock, because the background monitors (resource sampling, stop-marker
polling) write to it while the loop reads it.

Loop Stop Conditions (``should_stop_loop``), first match wins:
    emergency stop (signal / marker file / uncaught error)   → CRITICAL
    iteration cap reached                                    → WARNING
    wall-clock budget exhausted                              → WARNING
    too many consecutive fix failures                        → HIGH
    memory above ceiling                                     → HIGH
    regression rate above ceiling                            → HIGH
    error count rising or oscillating over the window        → HIGH

Issue Skips (``should_skip_error``):
    retry counter for the identity key exhausted, or the component is
    unstable (>= 3 attempts and > 60% failures in its last 5).

Fix Vetoes (``should_block_fix``):
    confidence below floor, low-confidence edit of a critical file,
    destructive pattern in the payload, too many file changes this iteration.
"""
import asyncio
import fnmatch
import json
import logging
import os
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence

from healer.core.config import SafetyConfig
from healer.core.constants import STOP_CRITICAL, STOP_HIGH, STOP_WARNING
from healer.core.shutdown import CancellationToken
from healer.models.issue import Issue
from healer.models.loop_state import FixAttempt, IterationSummary, LoopState
from healer.utils.resources import current_memory_mb

logger = logging.getLogger(__name__)

_RECENT_COMPONENT_WINDOW = 5


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------
@dataclass
class StopDecision:
    stop: bool
    reason: str = ""
    severity: Optional[str] = None


@dataclass
class SkipDecision:
    skip: bool
    reason: str = ""


@dataclass
class BlockDecision:
    blocked: bool
    reasons: List[str] = field(default_factory=list)


@dataclass
class FixContext:
    iteration: int
    target_file: Optional[str] = None


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------
@dataclass
class SafetyState:
    recent_limit: int = 50
    resource_limit: int = 100
    consecutive_failures: int = 0
    retry_counts: Dict[str, int] = field(default_factory=dict)
    recent_outcomes: Deque[dict] = field(init=False)
    resource_samples: Deque[dict] = field(init=False)
    file_changes: Dict[int, int] = field(default_factory=dict)
    emergency_stop: bool = False
    emergency_reason: Optional[str] = None
    emergency_source: Optional[str] = None
    stats: Dict[str, int] = field(default_factory=lambda: {
        "fix_attempts": 0,
        "fix_successes": 0,
        "fix_failures": 0,
        "errors_skipped": 0,
        "fixes_blocked": 0,
        "file_changes": 0,
        "emergency_stops": 0,
    })
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self) -> None:
        self.recent_outcomes = deque(maxlen=self.recent_limit)
        self.resource_samples = deque(maxlen=self.resource_limit)


class SafetyMechanisms:

    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        workspace: str = ".",
        token: Optional[CancellationToken] = None,
        memory_probe: Callable[[], float] = current_memory_mb,
        clock: Callable[[], float] = time.time,
        oscillation_threshold: float = 0.3,
    ) -> None:
        self.config = config or SafetyConfig()
        self.workspace = os.path.abspath(workspace)
        self.token = token
        self.memory_probe = memory_probe
        self.clock = clock
        self.oscillation_threshold = oscillation_threshold
        self.state = SafetyState(
            recent_limit=self.config.recent_results_limit,
            resource_limit=self.config.resource_history_limit,
        )
        self._destructive = [re.compile(p, re.IGNORECASE) for p in self.config.destructive_patterns]
        self._tasks: List[asyncio.Task] = []

    @property
    def stop_file_path(self) -> str:
        path = self.config.emergency_stop_file
        return path if os.path.isabs(path) else os.path.join(self.workspace, path)

    # ------------------------------------------------------------------
    # Loop stop
    # ------------------------------------------------------------------
    def should_stop_loop(
        self,
        loop_state: LoopState,
        iteration_history: Sequence[IterationSummary] = (),
        now: Optional[float] = None,
    ) -> StopDecision:
        cfg = self.config
        now = self.clock() if now is None else now

        if not self.state.emergency_stop and os.path.exists(self.stop_file_path):
            self.request_emergency_stop(self._read_stop_reason(), source="stop-file")
        with self.state.lock:
            if self.state.emergency_stop:
                return StopDecision(
                    True, f"Emergency stop: {self.state.emergency_reason}", STOP_CRITICAL
                )

        if loop_state.iteration >= cfg.max_iterations:
            return StopDecision(True, f"Maximum iterations reached ({cfg.max_iterations})", STOP_WARNING)

        if loop_state.start_time is not None:
            elapsed_minutes = (now - loop_state.start_time) / 60.0
            if elapsed_minutes >= cfg.max_execution_minutes:
                return StopDecision(
                    True,
                    f"Maximum execution time reached ({cfg.max_execution_minutes:g} minutes)",
                    STOP_WARNING,
                )

        with self.state.lock:
            consecutive = self.state.consecutive_failures
            latest_memory = self.state.resource_samples[-1]["memory_mb"] if self.state.resource_samples else None
            recent = list(self.state.recent_outcomes)

        if consecutive >= cfg.max_consecutive_failures:
            return StopDecision(True, f"Too many consecutive failures ({consecutive})", STOP_HIGH)

        if latest_memory is not None and latest_memory > cfg.max_memory_mb:
            return StopDecision(
                True, f"Memory usage {latest_memory:.0f}MB exceeds {cfg.max_memory_mb:g}MB", STOP_HIGH
            )

        regression_rate = self._regression_rate(recent)
        if regression_rate > cfg.max_regression_rate:
            return StopDecision(True, f"Regression rate too high ({regression_rate:.0%})", STOP_HIGH)

        unstable = self._stability_problem(iteration_history)
        if unstable:
            return StopDecision(True, unstable, STOP_HIGH)

        return StopDecision(False)

    def _regression_rate(self, recent: List[dict]) -> float:
        if len(recent) < _RECENT_COMPONENT_WINDOW:
            return 0.0
        regressions = sum(
            1 for r in recent if not r["success"] and "regression" in r.get("reason", "").lower()
        )
        return regressions / len(recent)

    def _stability_problem(self, iteration_history: Sequence[IterationSummary]) -> Optional[str]:
        window = self.config.stability_check_window
        counts = [s.remaining_errors for s in list(iteration_history)[-window:]]
        if len(counts) < window:
            return None
        if all(b > a for a, b in zip(counts, counts[1:])):
            return f"Error count rising over the last {window} iterations ({counts})"

        mean = _mean(counts)
        if mean and len(counts) > 1:
            variance = sum((c - mean) ** 2 for c in counts) / (len(counts) - 1)
            cv = variance ** 0.5 / mean
            changes = 0
            for i in range(1, len(counts) - 1):
                if (counts[i] - counts[i - 1]) * (counts[i + 1] - counts[i]) < 0:
                    changes += 1
            if cv > self.oscillation_threshold and changes >= window // 2:
                return f"Error count oscillating over the last {window} iterations ({counts})"
        return None

    # ------------------------------------------------------------------
    # Issue skip
    # ------------------------------------------------------------------
    def should_skip_error(
        self,
        issue: Issue,
        fix_history: Optional[Iterable[FixAttempt]] = None,
    ) -> SkipDecision:
        cfg = self.config
        with self.state.lock:
            retries = self.state.retry_counts.get(issue.identity_key, 0)
            recent = list(self.state.recent_outcomes)

        if retries >= cfg.max_error_retries:
            return self._skip(f"Retry limit reached ({retries}/{cfg.max_error_retries})")

        if fix_history is not None:
            attempts = [
                {"issue_key": a.issue_key, "component": a.component, "success": a.success, "reason": a.reason}
                for a in fix_history
            ]
        else:
            attempts = recent

        regression_rate = self._issue_regression_rate(issue.identity_key, attempts)
        if regression_rate > cfg.max_regression_rate:
            return self._skip(f"Fixes for this issue regress too often ({regression_rate:.0%})")

        outcomes = [a["success"] for a in attempts if a["component"] == issue.component]
        if len(outcomes) >= cfg.unstable_component_min_attempts:
            last = outcomes[-_RECENT_COMPONENT_WINDOW:]
            failure_rate = last.count(False) / len(last)
            if failure_rate > cfg.unstable_component_failure_rate:
                return self._skip(
                    f"Component '{issue.component}' unstable ({failure_rate:.0%} recent failures)"
                )
        return SkipDecision(False)

    @staticmethod
    def _issue_regression_rate(issue_key: str, attempts: List[dict]) -> float:
        related = [a for a in attempts if a["issue_key"] == issue_key]
        if not related:
            return 0.0
        regressions = sum(
            1 for a in related if not a["success"] and "regression" in (a.get("reason") or "").lower()
        )
        return regressions / len(related)

    def _skip(self, reason: str) -> SkipDecision:
        with self.state.lock:
            self.state.stats["errors_skipped"] += 1
        logger.info("Skipping issue: %s", reason)
        return SkipDecision(True, reason)

    # ------------------------------------------------------------------
    # Fix veto
    # ------------------------------------------------------------------
    def is_critical_file(self, path: Optional[str]) -> bool:
        if not path:
            return False
        normalized = path.replace("\\", "/")
        name = os.path.basename(normalized)
        return any(
            fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(normalized, pattern)
            for pattern in self.config.critical_files
        )

    def should_block_fix(self, fix, issue: Issue, context: FixContext) -> BlockDecision:
        cfg = self.config
        reasons: List[str] = []
        target = context.target_file or fix.target_file or (issue.location.file if issue.location else None)

        if fix.confidence < cfg.min_fix_confidence:
            reasons.append(f"Confidence {fix.confidence:.0f} below minimum {cfg.min_fix_confidence:.0f}")

        if self.is_critical_file(target) and fix.confidence < cfg.critical_file_confidence:
            reasons.append(
                f"Critical file {target} requires confidence >= {cfg.critical_file_confidence:.0f}"
            )

        payload = fix.payload_text()
        for pattern in self._destructive:
            if pattern.search(payload):
                reasons.append(f"Destructive pattern detected: {pattern.pattern}")

        with self.state.lock:
            changes = self.state.file_changes.get(context.iteration, 0)
        if changes >= cfg.max_file_changes_per_iteration:
            reasons.append(
                f"File change limit reached for iteration {context.iteration} ({changes})"
            )

        if reasons:
            with self.state.lock:
                self.state.stats["fixes_blocked"] += 1
            logger.warning("Blocked fix for %s: %s", issue.identity_key, "; ".join(reasons))
        return BlockDecision(bool(reasons), reasons)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def record_fix_attempt(
        self,
        issue_key: str,
        component: str,
        success: bool,
        reason: str = "",
    ) -> None:
        with self.state.lock:
            s = self.state
            s.retry_counts[issue_key] = s.retry_counts.get(issue_key, 0) + 1
            s.consecutive_failures = 0 if success else s.consecutive_failures + 1
            s.recent_outcomes.append({
                "issue_key": issue_key,
                "component": component,
                "success": success,
                "reason": reason,
                "timestamp": self.clock(),
            })
            s.stats["fix_attempts"] += 1
            s.stats["fix_successes" if success else "fix_failures"] += 1

    def record_file_change(self, path: str, iteration: int) -> None:
        with self.state.lock:
            self.state.file_changes[iteration] = self.state.file_changes.get(iteration, 0) + 1
            self.state.stats["file_changes"] += 1
        logger.debug("Recorded change to %s in iteration %d", path, iteration)

    def restore_from_history(self, fix_history: Iterable[FixAttempt]) -> None:
        """Rebuild retry counters and failure streaks after a resume."""
        with self.state.lock:
            self.state.retry_counts.clear()
            self.state.recent_outcomes.clear()
            self.state.consecutive_failures = 0
        for attempt in fix_history:
            self.record_fix_attempt(attempt.issue_key, attempt.component, attempt.success, attempt.reason)

    # ------------------------------------------------------------------
    # Emergency stop
    # ------------------------------------------------------------------
    def request_emergency_stop(self, reason: str, source: str = "internal") -> None:
        with self.state.lock:
            if self.state.emergency_stop:
                return
            self.state.emergency_stop = True
            self.state.emergency_reason = reason
            self.state.emergency_source = source
            self.state.stats["emergency_stops"] += 1
        logger.critical("EMERGENCY STOP (%s): %s", source, reason)
        if self.token is not None:
            self.token.cancel(f"emergency stop: {reason}")

    def create_emergency_stop(self, reason: str = "manual") -> str:
        """Write the stop marker; the running loop picks it up on its next poll."""
        path = self.stop_file_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"reason": reason, "timestamp": self.clock()}, f)
        logger.warning("Emergency stop marker created at %s", path)
        return path

    def clear_emergency_stop(self) -> bool:
        removed = False
        if os.path.exists(self.stop_file_path):
            os.remove(self.stop_file_path)
            removed = True
        with self.state.lock:
            self.state.emergency_stop = False
            self.state.emergency_reason = None
            self.state.emergency_source = None
        return removed

    def _read_stop_reason(self) -> str:
        try:
            with open(self.stop_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return str(data.get("reason", "stop marker present"))
        except (OSError, ValueError, AttributeError):
            return "stop marker present"

    # ------------------------------------------------------------------
    # Background monitoring
    # ------------------------------------------------------------------
    def sample_resources(self) -> dict:
        sample = {"timestamp": self.clock(), "memory_mb": self.memory_probe()}
        with self.state.lock:
            self.state.resource_samples.append(sample)
        if sample["memory_mb"] > self.config.max_memory_mb:
            logger.warning(
                "Memory usage %.0fMB above ceiling %.0fMB",
                sample["memory_mb"], self.config.max_memory_mb,
            )
        return sample

    def check_stop_file(self) -> bool:
        if os.path.exists(self.stop_file_path):
            self.request_emergency_stop(self._read_stop_reason(), source="stop-file")
            return True
        return False

    async def _resource_monitor(self) -> None:
        while True:
            self.sample_resources()
            await asyncio.sleep(self.config.resource_check_interval)

    async def _stop_file_monitor(self) -> None:
        while True:
            if self.check_stop_file():
                return
            await asyncio.sleep(self.config.stop_file_poll_interval)

    def start_monitoring(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._resource_monitor(), name="healer-resource-monitor"),
            asyncio.create_task(self._stop_file_monitor(), name="healer-stop-file-monitor"),
        ]
        logger.info("Safety monitoring started")

    async def stop_monitoring(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            logger.info("Safety monitoring stopped")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def report(self) -> dict:
        with self.state.lock:
            s = self.state
            samples = [r["memory_mb"] for r in s.resource_samples]
            report = {
                "stats": dict(s.stats),
                "consecutive_failures": s.consecutive_failures,
                "tracked_issues": len(s.retry_counts),
                "exhausted_issues": sorted(
                    k for k, v in s.retry_counts.items() if v >= self.config.max_error_retries
                ),
                "emergency_stop": {
                    "active": s.emergency_stop,
                    "reason": s.emergency_reason,
                    "source": s.emergency_source,
                },
                "memory": {
                    "current_mb": samples[-1] if samples else None,
                    "peak_mb": max(samples) if samples else None,
                    "average_mb": _mean(samples) if samples else None,
                },
                "limits": {
                    "max_iterations": self.config.max_iterations,
                    "max_consecutive_failures": self.config.max_consecutive_failures,
                    "max_memory_mb": self.config.max_memory_mb,
                    "max_execution_minutes": self.config.max_execution_minutes,
                    "max_error_retries": self.config.max_error_retries,
                },
            }
        attempts = report["stats"]["fix_attempts"]
        report["success_rate"] = report["stats"]["fix_successes"] / attempts if attempts else None
        return report
