"""
Issue Model
===========
Pydantic models for detected defects.

An issue is a tagged union on ``kind``. Every variant shares one envelope
(severity, component, message, frequency, location, ...) and carries only
the fields that make sense for it.

Envelope Fields:
    identity_key            — derived from kind + component + message
    severity                — CRITICAL | HIGH | MEDIUM | LOW
    component               — free-form tag (e.g. "ui", "persistence")
    message                 — detector message
    frequency               — how many times the detector saw it (>= 1)
    detected_at             — epoch seconds
    estimated_fix_confidence — detector's guess at fixability (0–100)
    location                — optional file / line / function / stack / url

Issues are immutable: a repeated sighting is expressed as a fresh copy with
a higher ``frequency`` (see ``dedupe_issues``).
"""
import time
from typing import Annotated, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field

from healer.core.constants import SEVERITY_RANK
from healer.utils.fingerprint import issue_identity_key

Severity = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]


class IssueLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: Optional[str] = None
    line: Optional[int] = None
    function: Optional[str] = None
    stack: Optional[str] = None
    url: Optional[str] = None


class _IssueBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: Severity = "MEDIUM"
    component: str = "unknown"
    message: str
    frequency: int = Field(default=1, ge=1)
    detected_at: float = Field(default_factory=time.time)
    estimated_fix_confidence: float = Field(default=60, ge=0, le=100)
    location: Optional[IssueLocation] = None

    @computed_field
    @property
    def identity_key(self) -> str:
        return issue_identity_key(self.kind, self.component, self.message)

    @property
    def severity_rank(self) -> int:
        return SEVERITY_RANK[self.severity]


class RuntimeIssue(_IssueBase):
    kind: Literal["runtime"] = "runtime"
    exception_type: Optional[str] = None


class FunctionalIssue(_IssueBase):
    kind: Literal["functional"] = "functional"
    expected: Optional[str] = None
    actual: Optional[str] = None
    user_action: Optional[str] = None


class InitializationIssue(_IssueBase):
    kind: Literal["initialization"] = "initialization"
    subsystem: Optional[str] = None


class InteractionIssue(_IssueBase):
    kind: Literal["interaction"] = "interaction"
    target: Optional[str] = None


class ConsoleIssue(_IssueBase):
    kind: Literal["console"] = "console"
    level: str = "error"


class NetworkIssue(_IssueBase):
    kind: Literal["network"] = "network"
    url: Optional[str] = None
    status_code: Optional[int] = None


class PerformanceIssue(_IssueBase):
    kind: Literal["performance"] = "performance"
    metric: Optional[str] = None
    value: Optional[float] = None
    threshold: Optional[float] = None


class MemoryIssue(_IssueBase):
    kind: Literal["memory"] = "memory"
    used_mb: Optional[float] = None
    limit_mb: Optional[float] = None


class RegressionIssue(_IssueBase):
    kind: Literal["regression"] = "regression"
    test_name: Optional[str] = None


Issue = Annotated[
    Union[
        RuntimeIssue,
        FunctionalIssue,
        InitializationIssue,
        InteractionIssue,
        ConsoleIssue,
        NetworkIssue,
        PerformanceIssue,
        MemoryIssue,
        RegressionIssue,
    ],
    Field(discriminator="kind"),
]

_issue_adapter: TypeAdapter = TypeAdapter(Issue)
_issue_list_adapter: TypeAdapter = TypeAdapter(List[Issue])


def parse_issue(data: dict) -> Issue:
    """Validate a raw dict into the matching Issue variant."""
    return _issue_adapter.validate_python(data)


def parse_issues(data: list) -> List[Issue]:
    return _issue_list_adapter.validate_python(data)


def dedupe_issues(raw: Iterable[Issue]) -> List[Issue]:
    """
    Merge issues sharing an identity key and order the result.

    Frequencies of duplicates are summed onto the first sighting. The result
    is ordered by severity (CRITICAL first), then frequency (highest first).
    """
    merged: Dict[str, Issue] = {}
    for issue in raw:
        key = issue.identity_key
        existing = merged.get(key)
        if existing is None:
            merged[key] = issue
        else:
            merged[key] = existing.model_copy(
                update={"frequency": existing.frequency + issue.frequency}
            )
    return sorted(
        merged.values(),
        key=lambda i: (i.severity_rank, -i.frequency),
    )
