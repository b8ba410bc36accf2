"""
Validation Result Model
=======================
Pydantic models produced by the validation pipeline.

StageOutcome      — one check (syntax, functional, regression, performance, side_effects)
ValidationResult  — all checks + aggregate score + recommendation + blockers
StageRecord       — one pipeline stage (initialize, create-checkpoint, ...) and its timing
PipelineResult    — the whole pipeline run for one candidate fix
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StageOutcome(BaseModel):
    name: str
    passed: bool
    score: float = 0.0
    details: Dict[str, Any] = Field(default_factory=dict)
    duration_seconds: float = 0.0


class ValidationResult(BaseModel):
    syntax: StageOutcome
    functional: StageOutcome
    regression: StageOutcome
    performance: StageOutcome
    side_effects: StageOutcome
    score: float = 0.0
    recommendation: str = "REJECT"
    critical_blockers: List[str] = Field(default_factory=list)

    @property
    def stages(self) -> List[StageOutcome]:
        return [self.syntax, self.functional, self.regression, self.performance, self.side_effects]


class StageRecord(BaseModel):
    name: str
    success: bool
    required: bool = True
    duration_seconds: float = 0.0
    error: Optional[str] = None


class PipelineResult(BaseModel):
    pipeline_id: str
    issue_key: str
    success: bool = False
    applied: bool = False
    rolled_back: bool = False
    checkpoint_id: Optional[str] = None
    stages: List[StageRecord] = Field(default_factory=list)
    failed_stage: Optional[str] = None
    validation: Optional[ValidationResult] = None
    decision_reason: str = ""
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def completed_stages(self) -> List[str]:
        return [s.name for s in self.stages if s.success]
