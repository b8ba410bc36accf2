"""
Fix Validator
=============
Runs the five validation checks for a candidate fix inside a throwaway
sandbox copy of the workspace. The real workspace is never touched here.

Checks (points awarded with default weights):
    syntax        (20) — Python ``ast``, JSON, YAML; other file types have no checker
    functional    (30) — configured command passes, or the fix changes the target
    regression    (25) — configured test command; partial credit = passed / total
    performance   (15) — configured command finishes within the time budget
    side_effects  (10) — no truncation beyond the ratio, no removed top-level names

Recommendation:
    >= 90 APPLY, >= 75 APPLY_WITH_MONITORING, >= 50 MANUAL_REVIEW, else REJECT.
    Any critical blocker (syntax failure, fix not applicable, too many
    regression failures) forces REJECT.
"""
import ast
import json
import logging
import os
import re
import shutil
import tempfile
import time
from typing import Callable, Iterable, List, Optional, Set, Tuple

import yaml

from healer.core.config import PipelineConfig
from healer.core.constants import APPLY, APPLY_WITH_MONITORING, MANUAL_REVIEW, REJECT
from healer.executor.command_runner import CommandResult, run_command
from healer.models.validation_result import StageOutcome, ValidationResult
from healer.utils.ignore_rules import build_ignore

logger = logging.getLogger(__name__)

_PASSED_RE = re.compile(r"(\d+)\s+passed", re.IGNORECASE)
_FAILED_RE = re.compile(r"(\d+)\s+failed", re.IGNORECASE)
_ERRORS_RE = re.compile(r"(\d+)\s+errors?\b", re.IGNORECASE)

BLOCKER_SYNTAX = "syntax check failed"
BLOCKER_NOT_APPLICABLE = "fix could not be applied to the target"
BLOCKER_REGRESSIONS = "too many regression failures"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def parse_test_counts(output: str) -> Tuple[int, int]:
    """Extract (passed, failed) from pytest / jest style summaries."""
    passed = sum(int(n) for n in _PASSED_RE.findall(output))
    failed = sum(int(n) for n in _FAILED_RE.findall(output))
    failed += sum(int(n) for n in _ERRORS_RE.findall(output))
    return passed, failed


def check_syntax(path: str, content: str) -> Tuple[bool, dict]:
    """Parse ``content`` with the checker matching ``path``'s extension."""
    ext = os.path.splitext(path)[1].lower()
    try:
        if ext == ".py":
            ast.parse(content, filename=path)
            return True, {"checker": "python-ast"}
        if ext == ".json":
            json.loads(content)
            return True, {"checker": "json"}
        if ext in (".yml", ".yaml"):
            yaml.safe_load(content)
            return True, {"checker": "yaml"}
    except SyntaxError as e:
        return False, {"checker": "python-ast", "error": f"{e.msg} (line {e.lineno})"}
    except json.JSONDecodeError as e:
        return False, {"checker": "json", "error": str(e)}
    except yaml.YAMLError as e:
        return False, {"checker": "yaml", "error": str(e)}
    return True, {"checker": None}


def _top_level_names(content: str) -> Set[str]:
    try:
        tree = ast.parse(content)
    except SyntaxError:
        return set()
    names: Set[str] = set()
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.Assign):
            names.update(t.id for t in node.targets if isinstance(t, ast.Name))
    return names


def recommend(score: float, config: PipelineConfig) -> str:
    if score >= config.apply_threshold:
        return APPLY
    if score >= config.monitor_threshold:
        return APPLY_WITH_MONITORING
    if score >= config.review_threshold:
        return MANUAL_REVIEW
    return REJECT


class FixValidator:

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        workspace: str = ".",
        exclude_patterns: Iterable[str] = (),
        runner: Callable[..., CommandResult] = run_command,
    ) -> None:
        self.config = config or PipelineConfig()
        self.workspace = os.path.abspath(workspace)
        self.exclude_patterns = list(exclude_patterns)
        self.runner = runner

    # ------------------------------------------------------------------
    # Sandbox
    # ------------------------------------------------------------------
    def prepare_sandbox(self) -> str:
        root = tempfile.mkdtemp(prefix="healer-sandbox-")
        sandbox = os.path.join(root, "workspace")
        shutil.copytree(self.workspace, sandbox, ignore=build_ignore(self.exclude_patterns),
                        symlinks=True)
        return sandbox

    def _run(self, command: str, cwd: str) -> CommandResult:
        return self.runner(command, cwd, timeout=self.config.command_timeout,
                           image=self.config.sandbox_image)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self, fix, target_rel: str) -> ValidationResult:
        """
        Apply ``fix`` to a sandbox copy of ``target_rel`` and run every check.

        Blocking; the pipeline calls it from a worker thread.
        """
        sandbox = self.prepare_sandbox()
        try:
            return self._validate_in(sandbox, fix, target_rel)
        finally:
            shutil.rmtree(os.path.dirname(sandbox), ignore_errors=True)

    def _validate_in(self, sandbox: str, fix, target_rel: str) -> ValidationResult:
        weights = self.config.stage_weights
        target = os.path.join(sandbox, target_rel)
        with open(target, "r", encoding="utf-8") as f:
            original = f.read()

        try:
            patched = fix.apply_to(original)
        except (ValueError, re.error) as e:
            logger.info("Fix for %s does not apply: %s", target_rel, e)
            failed = {"error": str(e)}
            return ValidationResult(
                syntax=StageOutcome(name="syntax", passed=False, details=failed),
                functional=StageOutcome(name="functional", passed=False, details=failed),
                regression=StageOutcome(name="regression", passed=False, details=failed),
                performance=StageOutcome(name="performance", passed=False, details=failed),
                side_effects=StageOutcome(name="side_effects", passed=False, details=failed),
                score=0.0,
                recommendation=REJECT,
                critical_blockers=[BLOCKER_NOT_APPLICABLE],
            )

        with open(target, "w", encoding="utf-8") as f:
            f.write(patched)

        syntax = self._timed("syntax", weights["syntax"], lambda: check_syntax(target_rel, patched))
        functional = self._timed("functional", weights["functional"],
                                 lambda: self._functional(sandbox, original, patched))
        regression = self._regression(sandbox, weights["regression"])
        performance = self._timed("performance", weights["performance"],
                                  lambda: self._performance(sandbox))
        side_effects = self._timed("side_effects", weights["side_effects"],
                                   lambda: self._side_effects(target_rel, original, patched))

        result = ValidationResult(
            syntax=syntax,
            functional=functional,
            regression=regression,
            performance=performance,
            side_effects=side_effects,
        )
        result.score = round(sum(s.score for s in result.stages), 2)

        blockers: List[str] = []
        if not syntax.passed:
            blockers.append(BLOCKER_SYNTAX)
        if regression.details.get("failed", 0) > self.config.max_regression_failures:
            blockers.append(BLOCKER_REGRESSIONS)
        result.critical_blockers = blockers
        result.recommendation = REJECT if blockers else recommend(result.score, self.config)

        logger.info(
            "Validated fix for %s: score=%.1f recommendation=%s blockers=%s",
            target_rel, result.score, result.recommendation, blockers or "none",
        )
        return result

    @staticmethod
    def _timed(name: str, weight: float, check: Callable[[], Tuple[bool, dict]]) -> StageOutcome:
        started = time.monotonic()
        passed, details = check()
        return StageOutcome(
            name=name,
            passed=passed,
            score=weight if passed else 0.0,
            details=details,
            duration_seconds=round(time.monotonic() - started, 3),
        )

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------
    def _functional(self, sandbox: str, original: str, patched: str) -> Tuple[bool, dict]:
        if self.config.functional_command:
            result = self._run(self.config.functional_command, sandbox)
            return result.ok, {"command": result.command, "exit_code": result.exit_code,
                               "output": result.excerpt}
        changed = patched != original
        return changed, {"command": None, "changed": changed}

    def _regression(self, sandbox: str, weight: float) -> StageOutcome:
        started = time.monotonic()
        command = self.config.regression_command
        if not command:
            return StageOutcome(name="regression", passed=True, score=weight,
                                details={"command": None, "failed": 0})

        result = self._run(command, sandbox)
        passed, failed = parse_test_counts(result.output)
        total = passed + failed
        if total:
            score = weight * passed / total
        else:
            score = weight if result.ok else 0.0
            failed = 0 if result.ok else 1
        return StageOutcome(
            name="regression",
            passed=result.ok and failed == 0,
            score=round(score, 2),
            details={
                "command": command,
                "exit_code": result.exit_code,
                "passed": passed,
                "failed": failed,
                "total": total,
                "output": result.excerpt,
            },
            duration_seconds=round(time.monotonic() - started, 3),
        )

    def _performance(self, sandbox: str) -> Tuple[bool, dict]:
        command = self.config.performance_command
        if not command:
            return True, {"command": None}
        result = self._run(command, sandbox)
        budget = self.config.performance_budget_seconds
        within = result.duration_seconds <= budget
        return result.ok and within, {
            "command": command,
            "exit_code": result.exit_code,
            "duration_seconds": result.duration_seconds,
            "budget_seconds": budget,
        }

    def _side_effects(self, target_rel: str, original: str, patched: str) -> Tuple[bool, dict]:
        details: dict = {}
        problems: List[str] = []
        if original and len(patched) < len(original) * (1 - self.config.truncation_ratio):
            problems.append("fix removes too much of the file")
            details["size_ratio"] = round(len(patched) / len(original), 3)
        if target_rel.endswith(".py"):
            removed = sorted(_top_level_names(original) - _top_level_names(patched))
            if removed:
                problems.append("fix removes top-level definitions")
                details["removed_names"] = removed
        details["problems"] = problems
        return not problems, details
