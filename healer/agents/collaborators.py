"""
Collaborators
=============
Interfaces the loop controller depends on but does not implement.

IssueDetector  — finds defects in the running application (browser
                 automation, log scrapers, test harnesses...)
FixGenerator   — turns one issue plus its code context into a candidate
                 fix; ``healer.llm.client.FixServiceClient`` is the HTTP
                 implementation shipped with the package
"""
from typing import List, Optional, Protocol, runtime_checkable

from healer.models.candidate_fix import CandidateFix
from healer.models.issue import Issue


@runtime_checkable
class IssueDetector(Protocol):

    async def detect(self) -> List[Issue]:
        ...


@runtime_checkable
class FixGenerator(Protocol):

    async def generate(self, issue: Issue, context: dict) -> Optional[CandidateFix]:
        ...
