"""
Loop Controller
===============
Drives the Detect → Prioritize → Fix → Validate → Decide loop.

Per Iteration:
    1. Detect issues (deduplicated). None found → success, stop.
    2. Rank them with the ErrorPrioritizer (batch width = diversity width).
    3. Take a "pre-iteration N" checkpoint (emergency-rollback target).
    4. Process the ranking in batches of ``parallel_fixes``; each batch runs
       concurrently and the next batch starts only when it has finished.
       Per issue: safety skip → context → generate → confidence gate →
       repeated-fix gate → ValidationPipeline.
    5. Aggregate outcomes, record ``issues − successes`` with the
       ConvergenceDetector, append an IterationSummary, persist.
    6. Decide whether to continue (cancellation, iteration cap, wall-clock
       cap, convergence, safety).

Fault Tolerance:
    - A failure while handling one issue is recorded as a failed attempt;
      the rest of the batch carries on.
    - Detection and persistence failures are fatal: fixes applied during
      the iteration are rolled back to the iteration checkpoint,
      status=failed is persisted (best effort) and the error propagates.
    - Cancellation (signal, stop marker, emergency stop) ends the run with
      status=interrupted; the state is persisted so ``resume()`` can pick
      up at the next iteration.

Loop state is mutated only between batches and iterations, on the event
loop thread. Everything else the loop consults is a function of
(LoopState, LoopHistory, current inputs).
"""
import asyncio
import logging
import os
import secrets
import time
from typing import Callable, List, Optional

from healer.agents.collaborators import FixGenerator, IssueDetector
from healer.core.config import LoopConfig
from healer.core.errors import DetectionError, StatePersistenceError
from healer.core.shutdown import CancellationToken
from healer.models.issue import Issue, dedupe_issues
from healer.models.loop_state import (
    FinalReport,
    FixAttempt,
    IterationSummary,
    LoopState,
    LoopStatus,
    TERMINAL_STATUSES,
)
from healer.services.convergence_detector import ConvergenceDetector
from healer.services.error_prioritizer import ErrorPrioritizer
from healer.services.results_writer import ResultsWriter
from healer.services.rollback_manager import RollbackManager
from healer.services.safety_mechanisms import SafetyMechanisms
from healer.services.validation_pipeline import ValidationPipeline
from healer.state.history import LoopHistory
from healer.state.loop_state_manager import LoopStateManager
from healer.utils import skip_reasons
from healer.utils.fingerprint import fix_fingerprint
from healer.utils.ignore_rules import relative_to

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Per-issue outcomes
# ---------------------------------------------------------------------------
SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"

_PREVIOUS_ATTEMPTS_IN_CONTEXT = 5
_HIGH_REMAINING_ERRORS = 10


class LoopController:
    """
    Owns the single LoopState of a run and wires every component together.

    Components are built from ``config`` unless injected (tests inject
    fakes for the detector and generator and sometimes the pipeline).
    """

    def __init__(
        self,
        detector: IssueDetector,
        generator: FixGenerator,
        config: Optional[LoopConfig] = None,
        token: Optional[CancellationToken] = None,
        state_manager: Optional[LoopStateManager] = None,
        rollback_manager: Optional[RollbackManager] = None,
        safety: Optional[SafetyMechanisms] = None,
        prioritizer: Optional[ErrorPrioritizer] = None,
        convergence: Optional[ConvergenceDetector] = None,
        pipeline: Optional[ValidationPipeline] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or LoopConfig()
        self.workspace = os.path.abspath(self.config.workspace)
        self.detector = detector
        self.generator = generator
        self.token = token or CancellationToken()
        self.clock = clock

        self.state_manager = state_manager or LoopStateManager(self.config.state, base_dir=self.workspace)
        self.rollback_manager = rollback_manager or RollbackManager(self.config.rollback, self.workspace)
        self.safety = safety or SafetyMechanisms(self.config.safety, self.workspace, token=self.token)
        self.prioritizer = prioritizer or ErrorPrioritizer(self.config.prioritizer)
        self.history = self._new_history()
        self.convergence = convergence or ConvergenceDetector(self.config.convergence)
        self.convergence.history = self.history.error_history
        self.pipeline = pipeline or ValidationPipeline(
            self.rollback_manager,
            self.safety,
            self.config.pipeline,
            workspace=self.workspace,
            token=self.token,
        )

        # The loop's own bookkeeping never takes part in checkpoints
        self.rollback_manager.exclude_path(self.state_manager.state_dir)
        self.rollback_manager.exclude_path(self.safety.stop_file_path)
        self.rollback_manager.exclude_path(self.config.resolve(self.config.results_path))

        self.state = LoopState()
        self._resumed = False
        self._iteration_checkpoint: Optional[str] = None
        self._applied_this_iteration = 0

    def _new_history(self) -> LoopHistory:
        return LoopHistory(
            error_cap=self.config.state.error_history_limit,
            fix_cap=self.config.state.fix_history_limit,
            iteration_cap=self.config.state.iteration_history_limit,
        )

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------
    async def resume(self) -> bool:
        """
        Reload persisted state so that ``run()`` continues where it stopped.

        Returns
        -------
        bool
            False when there is nothing to resume (no state, or the
            previous run already finished).
        """
        loaded = await asyncio.to_thread(self.state_manager.load_state)
        if loaded is None:
            logger.info("No persisted loop state to resume")
            return False
        if loaded.loop_state.status in TERMINAL_STATUSES:
            logger.info(
                "Previous session %s already finished (%s); not resuming",
                loaded.loop_state.session_id, loaded.loop_state.status.value,
            )
            return False

        self.state = loaded.loop_state
        self.history = loaded.history
        self.convergence.history = self.history.error_history
        self.safety.restore_from_history(self.history.fix_history)
        self._resumed = True
        logger.info(
            "Resuming session %s after iteration %d (source: %s%s)",
            self.state.session_id, self.state.iteration, loaded.source,
            f", migrated from {loaded.migrated_from}" if loaded.migrated_from else "",
        )
        return True

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    async def run(self) -> FinalReport:
        """Execute the remediation loop until a stop condition fires."""
        run_start = self.clock()
        if self._resumed:
            self.state.start_time = run_start
            self.state.stop_reason = None
            self.state.stop_severity = None
        else:
            self.state = LoopState(
                session_id=f"session_{int(run_start * 1000)}_{secrets.token_hex(3)}",
                start_time=run_start,
            )
        self.state.status = LoopStatus.RUNNING
        self.state.end_time = None
        self.state.error = None
        logger.info("Starting remediation session %s in %s", self.state.session_id, self.workspace)

        self.safety.start_monitoring()
        try:
            while self.should_continue():
                iteration = self.state.iteration + 1
                logger.info("--- Starting Iteration %d ---", iteration)
                finished = await self._run_iteration(iteration)
                if finished:
                    break
        except Exception as exc:
            await self._handle_fatal(exc)
            raise
        finally:
            await self.safety.stop_monitoring()

        self._finalize_status()
        self.state.end_time = self.clock()
        await self._persist_best_effort()
        report = self.build_report()
        await asyncio.to_thread(
            ResultsWriter.write_results, report, self.config.resolve(self.config.results_path)
        )
        logger.info(
            "Session %s finished: status=%s iterations=%d fixed=%d failed=%d skipped=%d (%s)",
            report.session_id, report.status.value, report.iterations, report.fixed_errors,
            report.failed_fixes, report.skipped_fixes, report.stop_reason or "-",
        )
        return report

    def should_continue(self) -> bool:
        """Evaluate every stop condition; record the first that fires."""
        if self.state.status == LoopStatus.SUCCESS:
            return False

        if self.token.is_cancelled:
            return self._stop(f"Cancelled: {self.token.reason}", "CRITICAL")

        if self.state.iteration >= self.config.max_iterations:
            return self._stop(f"Maximum iterations reached ({self.config.max_iterations})", "WARNING")

        if self.state.start_time is not None:
            elapsed_minutes = (self.clock() - self.state.start_time) / 60.0
            if elapsed_minutes >= self.config.safety.max_execution_minutes:
                return self._stop(
                    f"Maximum execution time reached ({self.config.safety.max_execution_minutes:g} minutes)",
                    "WARNING",
                )

        if self.history.error_history:
            analysis = self.convergence.analyze()
            if analysis.converged:
                return self._stop(f"Converged ({analysis.rule}): {analysis.reason}", None)

        decision = self.safety.should_stop_loop(
            self.state, list(self.history.iteration_history), now=self.clock()
        )
        if decision.stop:
            return self._stop(decision.reason, decision.severity)
        return True

    def _stop(self, reason: str, severity: Optional[str]) -> bool:
        self.state.stop_reason = reason
        self.state.stop_severity = severity
        logger.info("Stopping loop: %s", reason)
        return False

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------
    async def _run_iteration(self, iteration: int) -> bool:
        """Run one iteration. Returns True when the loop must end now."""
        iter_start = self.clock()
        self._applied_this_iteration = 0
        self._iteration_checkpoint = None

        issues = await self._detect()
        if not issues:
            logger.info("Iteration %d: no issues detected", iteration)
            self.convergence.record_error_count(0, iteration, timestamp=self.clock())
            self.history.record_iteration(IterationSummary(
                iteration=iteration,
                duration_seconds=round(self.clock() - iter_start, 3),
            ))
            self.state.iteration = iteration
            self.state.status = LoopStatus.SUCCESS
            self.state.stop_reason = "No issues detected"
            await self._persist()
            return True

        self.state.total_errors += len(issues)
        ranked = self.prioritizer.prioritize(
            issues,
            fix_history=list(self.history.fix_history),
            iteration=iteration,
            width=self.config.parallel_fixes,
        )

        await self._create_iteration_checkpoint(iteration)
        outcomes: List[str] = []
        try:
            width = self.config.parallel_fixes
            for start in range(0, len(ranked), width):
                if self.token.is_cancelled:
                    logger.warning("Iteration %d: cancelled before batch %d", iteration, start // width + 1)
                    break
                batch = ranked[start:start + width]
                results = await asyncio.gather(
                    *(self._process_issue(item.issue, iteration) for item in batch)
                )
                outcomes.extend(results)
        finally:
            if self._iteration_checkpoint:
                self.rollback_manager.unpin(self._iteration_checkpoint)

        successes = outcomes.count(SUCCESS)
        failures = outcomes.count(FAILED)
        skipped = outcomes.count(SKIPPED)
        self.state.fixed_errors += successes
        self.state.failed_fixes += failures
        self.state.skipped_fixes += skipped

        if self.token.is_cancelled:
            # Partial iteration: counters kept, iteration not marked complete
            self.state.status = LoopStatus.INTERRUPTED
            self.state.stop_reason = f"Cancelled: {self.token.reason}"
            self.state.stop_severity = "CRITICAL"
            await self._persist()
            return True

        remaining = len(issues) - successes
        self.convergence.record_error_count(remaining, iteration, timestamp=self.clock())
        self.history.record_iteration(IterationSummary(
            iteration=iteration,
            issues_detected=len(issues),
            successes=successes,
            failures=failures,
            skipped=skipped,
            remaining_errors=remaining,
            duration_seconds=round(self.clock() - iter_start, 3),
        ))
        self.state.iteration = iteration
        logger.info(
            "Iteration %d complete: %d detected, %d fixed, %d failed, %d skipped, %d remaining",
            iteration, len(issues), successes, failures, skipped, remaining,
        )
        await self._persist()
        return False

    async def _detect(self) -> List[Issue]:
        try:
            raw = await self.detector.detect()
        except Exception as exc:
            raise DetectionError(f"Issue detection failed: {exc}") from exc
        return dedupe_issues(raw or [])

    async def _create_iteration_checkpoint(self, iteration: int) -> None:
        try:
            checkpoint_id = await asyncio.to_thread(
                self.rollback_manager.create_checkpoint,
                f"pre-iteration {iteration}",
                {"type": "pre-iteration", "iteration": iteration, "session_id": self.state.session_id},
            )
        except Exception as exc:
            logger.error("Iteration %d: checkpoint failed: %s", iteration, exc, exc_info=True)
            return
        self.rollback_manager.pin(checkpoint_id)
        self._iteration_checkpoint = checkpoint_id

    # ------------------------------------------------------------------
    # Single issue
    # ------------------------------------------------------------------
    async def _process_issue(self, issue: Issue, iteration: int) -> str:
        try:
            return await self._attempt_fix(issue, iteration)
        except Exception as exc:
            logger.error("Unexpected failure handling %s: %s", issue.identity_key, exc, exc_info=True)
            self._record_attempt(issue, iteration, False, skip_reasons.describe(
                skip_reasons.UNEXPECTED_ERROR, f"{type(exc).__name__}: {exc}"
            ))
            return FAILED

    async def _attempt_fix(self, issue: Issue, iteration: int) -> str:
        key = issue.identity_key

        skip = self.safety.should_skip_error(issue, list(self.history.fix_history))
        if skip.skip:
            logger.info("Skipping %s: %s", key, skip_reasons.describe(skip_reasons.SAFETY_SKIP, skip.reason))
            return SKIPPED

        context = await asyncio.to_thread(self.gather_context, issue, iteration)
        try:
            fix = await self.generator.generate(issue, context)
        except Exception as exc:
            logger.error("Skipping %s: %s", key, skip_reasons.describe(skip_reasons.GENERATION_FAILED, str(exc)))
            return SKIPPED
        if fix is None:
            logger.info("Skipping %s: %s", key, skip_reasons.NO_FIX_PRODUCED)
            return SKIPPED

        fingerprint = fix_fingerprint(key, fix.kind, fix.payload_text())
        if fix.confidence < self.config.confidence_threshold:
            logger.info(
                "Fix for %s below confidence threshold (%.0f < %.0f)",
                key, fix.confidence, self.config.confidence_threshold,
            )
            self._record_attempt(issue, iteration, False, skip_reasons.LOW_CONFIDENCE, fix, fingerprint)
            return SKIPPED

        if any(a.fix_fingerprint == fingerprint and not a.success for a in self.history.fixes_for(key)):
            logger.warning("Repeated fix detected for %s, skipping", key)
            self._record_attempt(issue, iteration, False, skip_reasons.REPEATED_FIX, fix, fingerprint)
            return SKIPPED

        result = await self.pipeline.validate_fix(
            fix, issue, iteration=iteration, confidence_floor=self.config.safety.min_fix_confidence
        )
        if result.success:
            self._applied_this_iteration += 1
            self._record_attempt(issue, iteration, True, skip_reasons.APPLIED, fix, fingerprint)
            return SUCCESS

        if not result.applied and self.token.is_cancelled:
            logger.info("Skipping %s: %s", key, skip_reasons.describe(skip_reasons.CANCELLED, self.token.reason or ""))
            return SKIPPED
        reason = skip_reasons.ROLLED_BACK if result.rolled_back else skip_reasons.PIPELINE_REJECTED
        detail = result.decision_reason or result.error or ""
        self._record_attempt(issue, iteration, False, skip_reasons.describe(reason, detail), fix, fingerprint)
        return FAILED

    def gather_context(self, issue: Issue, iteration: int) -> dict:
        """Code around the issue location plus what has been tried before."""
        key = issue.identity_key
        previous = self.history.fixes_for(key)[-_PREVIOUS_ATTEMPTS_IN_CONTEXT:]
        context = {
            "iteration": iteration,
            "issue_key": key,
            "previous_attempts": [
                {"fix_kind": a.fix_kind, "success": a.success, "reason": a.reason, "iteration": a.iteration}
                for a in previous
            ],
        }

        location = issue.location
        if not location or not location.file:
            return context
        abs_path = os.path.join(self.workspace, location.file)
        if not relative_to(abs_path, self.workspace) or not os.path.isfile(abs_path):
            return context

        with open(abs_path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
        line = location.line or 1
        start = max(1, line - self.config.context_lines)
        end = min(len(lines), line + self.config.context_lines)
        context.update({
            "file": location.file,
            "line": location.line,
            "start_line": start,
            "end_line": end,
            "code": "\n".join(lines[start - 1:end]),
        })
        return context

    def _record_attempt(
        self,
        issue: Issue,
        iteration: int,
        success: bool,
        reason: str,
        fix=None,
        fingerprint: Optional[str] = None,
    ) -> None:
        self.history.record_fix(FixAttempt(
            issue_key=issue.identity_key,
            kind=issue.kind,
            component=issue.component,
            severity=issue.severity,
            message=issue.message[:200],
            fix_kind=fix.kind if fix is not None else None,
            fix_fingerprint=fingerprint,
            confidence=fix.confidence if fix is not None else 0.0,
            success=success,
            reason=reason,
            iteration=iteration,
            timestamp=self.clock(),
        ))
        self.safety.record_fix_attempt(issue.identity_key, issue.component, success, reason)

    # ------------------------------------------------------------------
    # Failure handling & persistence
    # ------------------------------------------------------------------
    async def _handle_fatal(self, exc: Exception) -> None:
        logger.critical("Fatal loop error: %s", exc, exc_info=True)
        self.state.status = LoopStatus.FAILED
        self.state.error = f"{type(exc).__name__}: {exc}"
        self.state.end_time = self.clock()
        self.safety.request_emergency_stop(f"uncaught loop error: {exc}", source="loop-error")

        if self._applied_this_iteration and self._iteration_checkpoint:
            logger.critical(
                "Rolling back %d fix(es) applied in this iteration to %s",
                self._applied_this_iteration, self._iteration_checkpoint,
            )
            try:
                await asyncio.to_thread(self.rollback_manager.rollback_to, self._iteration_checkpoint)
            except Exception as rollback_exc:
                logger.critical("Emergency rollback failed: %s", rollback_exc, exc_info=True)

        await self._persist_best_effort()

    async def _persist(self) -> None:
        await asyncio.to_thread(self.state_manager.save_state, self.state, self.history)

    async def _persist_best_effort(self) -> None:
        try:
            await self._persist()
        except StatePersistenceError as exc:
            logger.error("Could not persist loop state: %s", exc, exc_info=True)

    def _finalize_status(self) -> None:
        if self.state.status in (LoopStatus.SUCCESS, LoopStatus.INTERRUPTED):
            return
        if self.token.is_cancelled or self.safety.state.emergency_stop:
            self.state.status = LoopStatus.INTERRUPTED
            return
        counts = self.history.error_counts
        ceiling = max(self.config.convergence.zero_error_threshold,
                      self.config.convergence.acceptable_error_threshold)
        if counts and counts[-1] <= ceiling:
            self.state.status = LoopStatus.SUCCESS
        else:
            self.state.status = LoopStatus.FAILED

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def recommendations(self) -> List[str]:
        state = self.state
        recs: List[str] = []
        if state.failed_fixes > state.fixed_errors:
            recs.append(
                "More fixes failed than succeeded; review the fix generation service "
                "output and the validation commands."
            )
        if state.iteration >= self.config.max_iterations and state.status != LoopStatus.SUCCESS:
            recs.append("Iteration limit reached; raise max_iterations or narrow detection scope.")
        if state.total_errors and state.skipped_fixes > state.total_errors / 2:
            recs.append("Many issues were skipped; inspect retry limits and unstable components.")
        counts = self.history.error_counts
        if counts and counts[-1] > _HIGH_REMAINING_ERRORS:
            recs.append(f"{counts[-1]} errors remain; manual investigation is recommended.")
        analysis = self.convergence.analyze()
        if analysis.stalled or analysis.oscillating:
            recs.append(f"Loop stopped improving: {analysis.reason}")
        return recs

    def build_report(self) -> FinalReport:
        state = self.state
        end = state.end_time or self.clock()
        return FinalReport(
            session_id=state.session_id,
            status=state.status,
            iterations=state.iteration,
            total_errors=state.total_errors,
            fixed_errors=state.fixed_errors,
            failed_fixes=state.failed_fixes,
            skipped_fixes=state.skipped_fixes,
            duration_seconds=round(end - (state.start_time or end), 3),
            stop_reason=state.stop_reason,
            stop_severity=state.stop_severity,
            convergence=self.convergence.analyze().to_dict(),
            error_history=list(self.history.error_history),
            fix_history=list(self.history.fix_history)[-50:],
            recommendations=self.recommendations(),
            safety=self.safety.report(),
        )
