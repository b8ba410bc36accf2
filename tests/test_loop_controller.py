"""
Loop Controller Tests
=====================
End-to-end runs against a temporary workspace with a fake detector and
a fake fix generator: success, stalls, skips, fatal errors, cancellation
and resume.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from healer.agents.loop_controller import LoopController
from healer.core.config import LoopConfig, RollbackConfig, StateConfig
from healer.core.errors import DetectionError, StatePersistenceError
from healer.core.shutdown import CancellationToken
from healer.models.candidate_fix import ContentReplaceFix
from healer.models.issue import IssueLocation, RuntimeIssue
from healer.models.loop_state import LoopStatus
from healer.services.results_writer import ResultsWriter
from healer.utils import skip_reasons

ORIGINAL = "def total(items):\n    result = 0\n    for item in items:\n        result -= item\n    return result\n"


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "cart.py").write_text(ORIGINAL, encoding="utf-8")
    return tmp_path


def _config(workspace, **overrides):
    return LoopConfig(
        workspace=str(workspace),
        rollback=RollbackConfig(checkpoint_dir=".checkpoints"),
        state=StateConfig(state_dir=".state"),
        **overrides,
    )


def _issue():
    return RuntimeIssue(
        component="checkout",
        message="cart total is negative",
        severity="HIGH",
        location=IssueLocation(file="src/cart.py", line=4),
    )


def _fix(replace="result += item", confidence=90):
    return ContentReplaceFix(
        target_file="src/cart.py", confidence=confidence, search="result -= item", replace=replace
    )


def _detector(*batches):
    detector = MagicMock()
    detector.detect = AsyncMock(side_effect=list(batches))
    return detector


def _generator(fix):
    generator = MagicMock(spec=["generate"])
    generator.generate = AsyncMock(return_value=fix)
    return generator


def _read(workspace):
    return (workspace / "src" / "cart.py").read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------
class TestSuccessfulRuns:

    def test_fix_applied_then_clean_detection(self, workspace):
        controller = LoopController(_detector([_issue()], []), _generator(_fix()), _config(workspace))

        report = asyncio.run(controller.run())

        assert report.status == LoopStatus.SUCCESS
        assert report.exit_code == 0
        assert report.iterations == 2
        assert report.fixed_errors == 1
        assert report.stop_reason == "No issues detected"
        assert "result += item" in _read(workspace)
        assert report.fix_history[0].reason == skip_reasons.APPLIED

        results = ResultsWriter.read_results(str(workspace / "results.json"))
        assert results["status"] == "success"
        assert results["summary"]["fixed"] == 1

    def test_no_issues_on_first_iteration(self, workspace):
        generator = _generator(_fix())
        controller = LoopController(_detector([]), generator, _config(workspace))

        report = asyncio.run(controller.run())

        assert report.status == LoopStatus.SUCCESS
        assert report.iterations == 1
        generator.generate.assert_not_called()

    def test_state_is_persisted_after_run(self, workspace):
        controller = LoopController(_detector([]), _generator(None), _config(workspace))
        asyncio.run(controller.run())
        loaded = controller.state_manager.load_state()
        assert loaded.loop_state.status == LoopStatus.SUCCESS
        assert loaded.loop_state.session_id == controller.state.session_id

    def test_context_includes_code_around_location(self, workspace):
        controller = LoopController(_detector([]), _generator(None), _config(workspace, context_lines=1))
        context = controller.gather_context(_issue(), 1)
        assert context["file"] == "src/cart.py"
        assert context["start_line"] == 3
        assert context["end_line"] == 5
        assert "result -= item" in context["code"]
        assert context["previous_attempts"] == []


# ---------------------------------------------------------------------------
# Skips and failures
# ---------------------------------------------------------------------------
class TestSkipsAndFailures:

    def test_flat_error_count_stops_as_stalled(self, workspace):
        issue = _issue()
        controller = LoopController(
            _detector([issue], [issue], [issue], [issue]), _generator(None), _config(workspace)
        )

        report = asyncio.run(controller.run())

        assert report.status == LoopStatus.FAILED
        assert report.iterations == 3
        assert report.skipped_fixes == 3
        assert "stalled" in report.stop_reason
        assert report.fix_history == []

    def test_low_confidence_fix_is_skipped_and_recorded(self, workspace):
        controller = LoopController(
            _detector([_issue()]), _generator(_fix(confidence=40)), _config(workspace, max_iterations=1)
        )

        report = asyncio.run(controller.run())

        assert report.status == LoopStatus.FAILED
        assert report.skipped_fixes == 1
        assert report.fix_history[0].reason == skip_reasons.LOW_CONFIDENCE
        assert _read(workspace) == ORIGINAL

    def test_repeated_failing_fix_is_not_revalidated(self, workspace):
        issue = _issue()
        broken = _fix(replace="result += (")
        controller = LoopController(
            _detector([issue], [issue]), _generator(broken), _config(workspace, max_iterations=2)
        )

        report = asyncio.run(controller.run())

        assert report.failed_fixes == 1
        assert report.skipped_fixes == 1
        assert controller.pipeline.stats["runs"] == 1
        reasons = [a.reason for a in report.fix_history]
        assert reasons[0].startswith(skip_reasons.PIPELINE_REJECTED)
        assert reasons[1] == skip_reasons.REPEATED_FIX
        assert "Maximum iterations" in report.stop_reason

    def test_generation_error_is_a_plain_skip(self, workspace):
        generator = MagicMock(spec=["generate"])
        generator.generate = AsyncMock(side_effect=RuntimeError("service down"))
        controller = LoopController(_detector([_issue()]), generator, _config(workspace, max_iterations=1))

        report = asyncio.run(controller.run())

        assert report.skipped_fixes == 1
        assert report.fix_history == []

    def test_unexpected_pipeline_error_is_isolated(self, workspace):
        pipeline = MagicMock()
        pipeline.validate_fix = AsyncMock(side_effect=RuntimeError("boom"))
        controller = LoopController(
            _detector([_issue()]), _generator(_fix()), _config(workspace, max_iterations=1), pipeline=pipeline
        )

        report = asyncio.run(controller.run())

        assert report.failed_fixes == 1
        assert report.fix_history[0].reason == "UNEXPECTED_ERROR: RuntimeError: boom"


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------
class TestFatalErrors:

    def test_detection_error_propagates_and_persists_failed(self, workspace):
        detector = MagicMock()
        detector.detect = AsyncMock(side_effect=RuntimeError("browser crashed"))
        controller = LoopController(detector, _generator(None), _config(workspace))

        with pytest.raises(DetectionError):
            asyncio.run(controller.run())

        loaded = controller.state_manager.load_state()
        assert loaded.loop_state.status == LoopStatus.FAILED
        assert "browser crashed" in loaded.loop_state.error
        assert controller.safety.state.emergency_source == "loop-error"

    def test_persistence_failure_rolls_back_iteration(self, workspace):
        controller = LoopController(_detector([_issue()]), _generator(_fix()), _config(workspace))

        with patch.object(controller.state_manager, "save_state",
                          side_effect=StatePersistenceError("disk full")):
            with pytest.raises(StatePersistenceError):
                asyncio.run(controller.run())

        assert controller.state.status == LoopStatus.FAILED
        assert _read(workspace) == ORIGINAL

    def test_failed_status_is_saved_after_transient_write_error(self, workspace):
        controller = LoopController(_detector([_issue()]), _generator(_fix()), _config(workspace))
        real_save = controller.state_manager.save_state

        def flaky_save(state, history):
            if state.status != LoopStatus.FAILED:
                raise StatePersistenceError("disk full")
            return real_save(state, history)

        with patch.object(controller.state_manager, "save_state", side_effect=flaky_save):
            with pytest.raises(StatePersistenceError):
                asyncio.run(controller.run())

        loaded = controller.state_manager.load_state()
        assert loaded.loop_state.status == LoopStatus.FAILED
        assert "disk full" in loaded.loop_state.error


# ---------------------------------------------------------------------------
# Cancellation & resume
# ---------------------------------------------------------------------------
class TestCancellationAndResume:

    def _cancelling_generator(self, token):
        async def generate(issue, context):
            token.cancel("operator interrupt")
            return _fix()

        generator = MagicMock(spec=["generate"])
        generator.generate = AsyncMock(side_effect=generate)
        return generator

    def test_cancellation_interrupts_without_applying(self, workspace):
        token = CancellationToken()
        controller = LoopController(
            _detector([_issue()]), self._cancelling_generator(token), _config(workspace), token=token
        )

        report = asyncio.run(controller.run())

        assert report.status == LoopStatus.INTERRUPTED
        assert report.exit_code == 1
        assert report.stop_severity == "CRITICAL"
        assert _read(workspace) == ORIGINAL

    def test_resume_continues_interrupted_session(self, workspace):
        token = CancellationToken()
        first = LoopController(
            _detector([_issue()]), self._cancelling_generator(token), _config(workspace), token=token
        )
        asyncio.run(first.run())

        second = LoopController(_detector([]), _generator(None), _config(workspace))

        async def run_test():
            resumed = await second.resume()
            report = await second.run()
            return resumed, report

        resumed, report = asyncio.run(run_test())

        assert resumed is True
        assert report.session_id == first.state.session_id
        assert report.status == LoopStatus.SUCCESS
        assert report.iterations == 1

    def test_finished_session_is_not_resumed(self, workspace):
        asyncio.run(LoopController(_detector([]), _generator(None), _config(workspace)).run())
        controller = LoopController(_detector([]), _generator(None), _config(workspace))
        assert asyncio.run(controller.resume()) is False

    def test_nothing_to_resume(self, workspace):
        controller = LoopController(_detector([]), _generator(None), _config(workspace))
        assert asyncio.run(controller.resume()) is False
