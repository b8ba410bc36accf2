"""
Validation Pipeline
===================
Staged gate between a candidate fix and the real workspace.

Stages (timeout seconds, required?):
    initialize               30   yes  resolve + read the target file
    create-checkpoint        60   yes  snapshot the workspace, pin it
    run-stages              300   yes  sandboxed syntax / functional / regression /
                                       performance / side-effect checks
    evaluate                 10   yes  decide whether to apply
    apply-fix                60   no   write the fix under the tree lock
    post-apply-validation   120   no   re-check syntax + optional smoke command
    report                   30   yes  summarise (and optionally persist) the run
    cleanup                  30   yes  unpin the checkpoint (always runs)

Apply Decision:
    recommendation in {APPLY, APPLY_WITH_MONITORING}
    AND confidence > floor
    AND no critical blocker (a syntax failure always blocks)
    AND SafetyMechanisms.should_block_fix does not veto
    AND the run has not been cancelled

Failure Semantics:
    A required stage failure (including a timeout) aborts the remaining
    stages. If the fix was already applied it is rolled back to the
    pipeline checkpoint, scoped to the touched file so that sibling fixes
    applied by the same batch survive. A failing post-apply check also
    rolls the fix back.

Concurrency:
    apply-fix and post-apply-validation run under one pipeline-wide lock,
    so a post-apply check only ever sees its own change on top of fixes
    that already passed. The rollback baseline is re-taken under that
    lock right before the write.
"""
import asyncio
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from healer.core.config import PipelineConfig
from healer.core.constants import APPLYABLE_RECOMMENDATIONS
from healer.core.errors import StageFailure, StageTimeout
from healer.core.shutdown import CancellationToken
from healer.executor.command_runner import run_command
from healer.models.issue import Issue
from healer.models.validation_result import PipelineResult, StageRecord
from healer.services.fix_validator import FixValidator, check_syntax
from healer.services.rollback_manager import RollbackManager
from healer.services.safety_mechanisms import FixContext, SafetyMechanisms
from healer.utils.ignore_rules import relative_to

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """Mutable per-run context threaded through the stages."""
    fix: object
    issue: Issue
    iteration: int
    confidence_floor: float
    result: PipelineResult
    target_rel: str = ""
    original: str = ""
    should_apply: bool = False
    reasons: List[str] = field(default_factory=list)


class ValidationPipeline:

    def __init__(
        self,
        rollback_manager: RollbackManager,
        safety: SafetyMechanisms,
        config: Optional[PipelineConfig] = None,
        workspace: str = ".",
        validator: Optional[FixValidator] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.workspace = os.path.abspath(workspace)
        self.rollback_manager = rollback_manager
        self.safety = safety
        self.token = token
        self.validator = validator or FixValidator(
            self.config, self.workspace, rollback_manager.exclude_patterns
        )
        self.stats = {"runs": 0, "applied": 0, "rolled_back": 0, "rejected": 0, "failed": 0}
        self._apply_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def validate_fix(
        self,
        fix,
        issue: Issue,
        iteration: int = 0,
        confidence_floor: float = 0.0,
    ) -> PipelineResult:
        """
        Run every stage for one candidate fix.

        Returns
        -------
        PipelineResult
            ``success`` is True only if the fix was applied and kept.
        """
        started = time.monotonic()
        run = _Run(
            fix=fix,
            issue=issue,
            iteration=iteration,
            confidence_floor=confidence_floor,
            result=PipelineResult(
                pipeline_id=f"pipeline_{int(time.time() * 1000)}_{secrets.token_hex(3)}",
                issue_key=issue.identity_key,
            ),
        )
        self.stats["runs"] += 1

        try:
            ok = await self._run_sequence(run, [
                ("initialize", self._initialize, True),
                ("create-checkpoint", self._create_checkpoint, True),
                ("run-stages", self._run_stages, True),
                ("evaluate", self._evaluate, True),
            ])
            if ok and run.should_apply:
                async with self._apply_lock:
                    ok = await self._run_sequence(run, [
                        ("apply-fix", self._apply_fix, False),
                        ("post-apply-validation", self._post_apply_validation, False),
                    ])
            if ok:
                await self._run_sequence(run, [("report", self._report, True)])
        finally:
            await self._run_stage(run, "cleanup", self._cleanup, True)

        result = run.result
        result.success = result.applied and not result.rolled_back and result.failed_stage is None
        result.decision_reason = "; ".join(run.reasons) if run.reasons else (
            "applied" if result.success else result.decision_reason
        )
        result.duration_seconds = round(time.monotonic() - started, 3)
        self._count(result)
        logger.info(
            "Pipeline %s for %s: success=%s applied=%s rolled_back=%s (%s)",
            result.pipeline_id, result.issue_key, result.success, result.applied,
            result.rolled_back, result.decision_reason or result.error or "-",
        )
        return result

    async def _run_sequence(self, run: _Run, stages: List[tuple]) -> bool:
        """Run stages in order; a required failure aborts and returns False."""
        for name, stage, required in stages:
            ok = await self._run_stage(run, name, stage, required)
            if not ok and required:
                await self._abort(run)
                return False
        return True

    async def _run_stage(
        self,
        run: _Run,
        name: str,
        stage: Callable[[_Run], Awaitable[None]],
        required: bool,
    ) -> bool:
        timeout = self.config.stage_timeouts.get(name, 60)
        started = time.monotonic()
        record = StageRecord(name=name, success=True, required=required)
        try:
            await asyncio.wait_for(stage(run), timeout=timeout)
        except asyncio.TimeoutError:
            err = StageTimeout(name, timeout)
            record.success, record.error = False, str(err)
        except StageFailure as err:
            record.success, record.error = False, str(err)
        except Exception as err:
            logger.error("Stage %s raised: %s", name, err, exc_info=True)
            record.success, record.error = False, f"{type(err).__name__}: {err}"
        record.duration_seconds = round(time.monotonic() - started, 3)
        run.result.stages.append(record)

        if not record.success:
            logger.warning("Pipeline %s stage %s failed: %s",
                           run.result.pipeline_id, name, record.error)
            if required and run.result.failed_stage is None:
                run.result.failed_stage = name
                run.result.error = record.error
        return record.success

    async def _abort(self, run: _Run) -> None:
        if run.result.applied and not run.result.rolled_back:
            logger.error("Emergency rollback for pipeline %s", run.result.pipeline_id)
            await self._rollback(run)

    async def _rollback(self, run: _Run) -> None:
        checkpoint_id = run.result.checkpoint_id
        if not checkpoint_id:
            return
        try:
            outcome = await asyncio.to_thread(
                self.rollback_manager.rollback_to,
                checkpoint_id,
                verify_integrity=True,
                paths=[run.target_rel],
            )
            run.result.rolled_back = outcome.success
        except Exception as err:
            logger.critical("Rollback of %s failed: %s", run.target_rel, err, exc_info=True)
            run.result.error = f"rollback failed: {err}"

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _initialize(self, run: _Run) -> None:
        target = run.fix.target_file or (run.issue.location.file if run.issue.location else None)
        if not target:
            raise StageFailure("initialize", "fix has no target file")
        abs_target = os.path.abspath(os.path.join(self.workspace, target))
        rel = relative_to(abs_target, self.workspace)
        if not rel:
            raise StageFailure("initialize", f"target {target} is outside the workspace")
        if not os.path.isfile(abs_target):
            raise StageFailure("initialize", f"target {target} does not exist")
        run.target_rel = rel
        run.original = await asyncio.to_thread(_read_text, abs_target)

    async def _create_checkpoint(self, run: _Run) -> None:
        checkpoint_id = await asyncio.to_thread(
            self.rollback_manager.create_checkpoint,
            f"Before fix for {run.issue.identity_key}",
            {"type": "pre-fix", "issue_key": run.issue.identity_key,
             "target": run.target_rel, "pipeline_id": run.result.pipeline_id},
        )
        self.rollback_manager.pin(checkpoint_id)
        run.result.checkpoint_id = checkpoint_id

    async def _run_stages(self, run: _Run) -> None:
        run.result.validation = await asyncio.to_thread(
            self.validator.validate, run.fix, run.target_rel
        )

    async def _evaluate(self, run: _Run) -> None:
        validation = run.result.validation
        reasons = run.reasons
        if validation is None:
            raise StageFailure("evaluate", "no validation result")
        if validation.critical_blockers:
            reasons.append("blocked: " + ", ".join(validation.critical_blockers))
        if validation.recommendation not in APPLYABLE_RECOMMENDATIONS:
            reasons.append(f"recommendation {validation.recommendation} (score {validation.score:.0f})")
        if run.fix.confidence <= run.confidence_floor:
            reasons.append(f"confidence {run.fix.confidence:.0f} <= {run.confidence_floor:.0f}")
        veto = self.safety.should_block_fix(
            run.fix, run.issue, FixContext(iteration=run.iteration, target_file=run.target_rel)
        )
        if veto.blocked:
            reasons.extend(veto.reasons)
        if not self.config.auto_apply:
            reasons.append("auto-apply disabled")
        run.should_apply = not reasons

    async def _apply_fix(self, run: _Run) -> None:
        if not run.should_apply:
            return
        if self.token is not None and self.token.is_cancelled:
            run.reasons.append(f"cancelled before apply ({self.token.reason})")
            return
        await self._refresh_baseline(run)
        await asyncio.to_thread(self._write_fix, run)
        run.result.applied = True
        self.safety.record_file_change(run.target_rel, run.iteration)

    async def _refresh_baseline(self, run: _Run) -> None:
        # Fixes kept since create-checkpoint must survive a scoped rollback
        previous = run.result.checkpoint_id
        checkpoint_id = await asyncio.to_thread(
            self.rollback_manager.create_checkpoint,
            f"Before applying fix for {run.issue.identity_key}",
            {"type": "pre-apply", "issue_key": run.issue.identity_key,
             "target": run.target_rel, "pipeline_id": run.result.pipeline_id},
        )
        self.rollback_manager.pin(checkpoint_id)
        run.result.checkpoint_id = checkpoint_id
        if previous:
            self.rollback_manager.unpin(previous)

    def _write_fix(self, run: _Run) -> None:
        abs_target = os.path.join(self.workspace, run.target_rel)
        with self.rollback_manager.tree_lock:
            current = _read_text(abs_target)
            patched = run.fix.apply_to(current)
            tmp = f"{abs_target}.healer-{secrets.token_hex(4)}"
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(patched)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, abs_target)
        logger.info("Applied %s fix to %s", run.fix.kind, run.target_rel)

    async def _post_apply_validation(self, run: _Run) -> None:
        if not run.result.applied:
            return
        abs_target = os.path.join(self.workspace, run.target_rel)
        content = await asyncio.to_thread(_read_text, abs_target)
        ok, details = check_syntax(run.target_rel, content)
        problem = None if ok else f"syntax check failed after apply: {details.get('error')}"
        if ok and self.config.smoke_command:
            smoke = await asyncio.to_thread(
                run_command, self.config.smoke_command, self.workspace,
                self.config.command_timeout, self.config.sandbox_image,
            )
            if not smoke.ok:
                problem = f"smoke command failed (exit {smoke.exit_code})"
        if problem:
            run.reasons.append(f"regression after apply: {problem}")
            await self._rollback(run)
            raise StageFailure("post-apply-validation", problem)

    async def _report(self, run: _Run) -> None:
        if not self.config.reports_dir:
            return
        reports_dir = self.config.reports_dir
        if not os.path.isabs(reports_dir):
            reports_dir = os.path.join(self.workspace, reports_dir)
        path = os.path.join(reports_dir, f"{run.result.pipeline_id}.json")
        payload = run.result.model_dump(mode="json")
        await asyncio.to_thread(_write_json, path, payload)

    async def _cleanup(self, run: _Run) -> None:
        if run.result.checkpoint_id:
            self.rollback_manager.unpin(run.result.checkpoint_id)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------
    def _count(self, result: PipelineResult) -> None:
        if result.success:
            self.stats["applied"] += 1
        elif result.rolled_back:
            self.stats["rolled_back"] += 1
        elif result.failed_stage:
            self.stats["failed"] += 1
        else:
            self.stats["rejected"] += 1


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _write_json(path: str, payload: dict) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
