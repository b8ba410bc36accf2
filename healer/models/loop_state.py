"""
Loop State Model
================
Pydantic models for the run-level state and its history records.

LoopState           — exactly one per run, owned by the loop controller
ErrorCountSample    — one error count per iteration (convergence input)
FixAttempt          — one candidate-fix outcome (safety / prioritizer input)
IterationSummary    — what happened in one iteration
FinalReport         — returned by LoopController.run()

Persisted records use camelCase keys (``startTime``, ``totalErrors``, ...).
"""
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class LoopStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


TERMINAL_STATUSES = frozenset({LoopStatus.SUCCESS, LoopStatus.FAILED})


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class LoopState(_CamelModel):
    session_id: str = ""
    iteration: int = 0
    status: LoopStatus = LoopStatus.IDLE
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    total_errors: int = 0
    fixed_errors: int = 0
    failed_fixes: int = 0
    skipped_fixes: int = 0
    stop_reason: Optional[str] = None
    stop_severity: Optional[str] = None
    error: Optional[str] = None


class ErrorCountSample(_CamelModel):
    iteration: int
    error_count: int
    improvement: int = 0
    improvement_rate: float = 0.0
    timestamp: float = Field(default_factory=time.time)


class FixAttempt(_CamelModel):
    issue_key: str
    kind: str
    component: str = "unknown"
    severity: str = "MEDIUM"
    message: str = ""
    fix_kind: Optional[str] = None
    fix_fingerprint: Optional[str] = None
    confidence: float = 0.0
    success: bool = False
    reason: str = ""
    iteration: int = 0
    timestamp: float = Field(default_factory=time.time)


class IterationSummary(_CamelModel):
    iteration: int
    issues_detected: int = 0
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    remaining_errors: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None


class FinalReport(BaseModel):
    session_id: str
    status: LoopStatus
    iterations: int
    total_errors: int
    fixed_errors: int
    failed_fixes: int
    skipped_fixes: int
    duration_seconds: float
    stop_reason: Optional[str] = None
    stop_severity: Optional[str] = None
    convergence: Dict[str, Any] = Field(default_factory=dict)
    error_history: List[ErrorCountSample] = Field(default_factory=list)
    fix_history: List[FixAttempt] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    safety: Dict[str, Any] = Field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return 0 if self.status == LoopStatus.SUCCESS else 1
