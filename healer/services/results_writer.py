"""
Results Writer
==============
Serializes the FinalReport of a remediation run into results.json.
"""
import json
import logging
import os
from collections import Counter
from typing import Any, Dict, Optional

from healer.models.loop_state import FinalReport
from healer.utils.skip_reasons import ATTEMPT_FAILURES, reason_code

logger = logging.getLogger(__name__)

_FIX_HISTORY_LIMIT = 50


class ResultsWriter:
    """
    Compiles the outcome of a run into a structured JSON file for the
    status API and any downstream report renderer.
    """

    @staticmethod
    def build(report: FinalReport) -> Dict[str, Any]:
        data = report.model_dump(mode="json")
        data["exit_code"] = report.exit_code
        data["fix_history"] = data["fix_history"][-_FIX_HISTORY_LIMIT:]
        data["summary"] = {
            "status": data["status"],
            "iterations": report.iterations,
            "fixed": report.fixed_errors,
            "failed": report.failed_fixes,
            "skipped": report.skipped_fixes,
            "error_counts": [s.error_count for s in report.error_history],
            "failure_reasons": ResultsWriter.failure_reasons(report),
        }
        return data

    @staticmethod
    def failure_reasons(report: FinalReport) -> Dict[str, int]:
        """Count failed attempts by reason constant."""
        counts: Counter = Counter()
        for attempt in report.fix_history:
            code = reason_code(attempt.reason)
            if not attempt.success and code in ATTEMPT_FAILURES:
                counts[code] += 1
        return dict(counts)

    @staticmethod
    def write_results(report: FinalReport, output_path: str = "results.json") -> bool:
        """
        Compile the report and write it to ``output_path``.
        """
        try:
            data = ResultsWriter.build(report)
            abs_output = os.path.abspath(output_path)
            os.makedirs(os.path.dirname(abs_output), exist_ok=True)
            logger.info("Writing final results to %s", abs_output)

            with open(abs_output, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)

            return True

        except Exception as e:
            logger.error("Failed to write %s: %s", output_path, e, exc_info=True)
            return False

    @staticmethod
    def read_results(path: str = "results.json") -> Optional[Dict[str, Any]]:
        """Load a previously written results file, or None if there is none."""
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
