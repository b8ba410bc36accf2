"""
Candidate Fix Model
===================
Pydantic models for fixes returned by the fix-generation service.

Tagged union on ``kind``:
    content-replace — replace ``search`` with ``replace`` (literal or regex)
    line-insert     — insert ``code`` before 1-based ``line``
    full-replace    — replace the whole target file with ``content``

Shared envelope:
    issue_key       — identity key of the issue being fixed
    target_file     — workspace-relative path (falls back to issue location)
    confidence      — generator self-reported confidence (0–100)
    explanation     — short human-readable rationale
    provider        — which generator produced it

Fixes are immutable once produced.
"""
import re
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _FixBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    issue_key: str = ""
    target_file: Optional[str] = None
    confidence: float = Field(ge=0, le=100)
    explanation: str = ""
    provider: str = ""


class ContentReplaceFix(_FixBase):
    kind: Literal["content-replace"] = "content-replace"
    search: str = Field(min_length=1)
    replace: str
    regex: bool = False

    def payload_text(self) -> str:
        return self.replace

    def apply_to(self, content: str) -> str:
        if self.regex:
            patched, count = re.subn(self.search, self.replace, content)
        else:
            count = content.count(self.search)
            patched = content.replace(self.search, self.replace)
        if count == 0:
            raise ValueError("search text not found in target file")
        return patched


class LineInsertFix(_FixBase):
    kind: Literal["line-insert"] = "line-insert"
    line: int = Field(ge=1)
    code: str

    def payload_text(self) -> str:
        return self.code

    def apply_to(self, content: str) -> str:
        lines = content.split("\n")
        index = min(self.line - 1, len(lines))
        lines[index:index] = self.code.split("\n")
        return "\n".join(lines)


class FullReplaceFix(_FixBase):
    kind: Literal["full-replace"] = "full-replace"
    content: str

    def payload_text(self) -> str:
        return self.content

    def apply_to(self, content: str) -> str:
        return self.content


CandidateFix = Annotated[
    Union[ContentReplaceFix, LineInsertFix, FullReplaceFix],
    Field(discriminator="kind"),
]

_fix_adapter: TypeAdapter = TypeAdapter(CandidateFix)


def parse_fix(data: dict) -> CandidateFix:
    """Validate a raw dict into the matching CandidateFix variant."""
    return _fix_adapter.validate_python(data)
