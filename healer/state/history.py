"""
Loop History
============
Bounded ring buffers for everything the loop remembers between iterations.

- error_history:      ErrorCountSample per iteration  (convergence input)
- fix_history:        FixAttempt per candidate fix    (safety / prioritizer input)
- iteration_history:  IterationSummary per iteration  (stability checks, reports)

Each buffer is a ``deque(maxlen=N)``: appending beyond capacity drops the
oldest entry. ``to_dict`` / ``from_dict`` round-trip through the persisted
``history`` object.
"""
from collections import deque
from typing import Deque, Dict, List, Optional

from healer.models.loop_state import ErrorCountSample, FixAttempt, IterationSummary

_DEFAULT_ERROR_CAP = 200
_DEFAULT_FIX_CAP = 100
_DEFAULT_ITERATION_CAP = 20


class LoopHistory:

    def __init__(
        self,
        error_cap: int = _DEFAULT_ERROR_CAP,
        fix_cap: int = _DEFAULT_FIX_CAP,
        iteration_cap: int = _DEFAULT_ITERATION_CAP,
    ) -> None:
        self.error_history: Deque[ErrorCountSample] = deque(maxlen=error_cap)
        self.fix_history: Deque[FixAttempt] = deque(maxlen=fix_cap)
        self.iteration_history: Deque[IterationSummary] = deque(maxlen=iteration_cap)

    def record_fix(self, attempt: FixAttempt) -> None:
        self.fix_history.append(attempt)

    def record_iteration(self, summary: IterationSummary) -> None:
        self.iteration_history.append(summary)

    def fixes_for(self, issue_key: str) -> List[FixAttempt]:
        return [a for a in self.fix_history if a.issue_key == issue_key]

    @property
    def error_counts(self) -> List[int]:
        return [s.error_count for s in self.error_history]

    def to_dict(self) -> Dict[str, list]:
        """Serialise to the persisted camelCase shape."""
        return {
            "errorHistory": [s.model_dump(mode="json", by_alias=True) for s in self.error_history],
            "fixHistory": [a.model_dump(mode="json", by_alias=True) for a in self.fix_history],
            "iterationHistory": [
                s.model_dump(mode="json", by_alias=True) for s in self.iteration_history
            ],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict], **kwargs) -> "LoopHistory":
        history = cls(**kwargs)
        data = data or {}
        for entry in data.get("errorHistory", []):
            history.error_history.append(ErrorCountSample.model_validate(entry))
        for entry in data.get("fixHistory", []):
            history.fix_history.append(FixAttempt.model_validate(entry))
        for entry in data.get("iterationHistory", []):
            history.iteration_history.append(IterationSummary.model_validate(entry))
        return history
