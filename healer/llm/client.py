"""
Fix Service Client
==================
Asynchronous HTTP client for the external fix-generation service.

Request:
    POST {FIX_SERVICE_URL}
    {"issue": {...Issue...}, "context": {...}}

Response:
    {"fix": {"kind": "content-replace" | "line-insert" | "full-replace", ...}}
    {"fix": null}                       → the service has no fix to offer

Strict Validation:
    - The ``fix`` object is parsed with the CandidateFix discriminated union
    - Unknown kinds, missing fields or out-of-range confidence REJECT the
      response; there is no auto-repair
    - A rejected response raises FixGenerationError (INVALID_RESPONSE)

Retries:
    - Timeouts and 5xx responses are retried (default 2 attempts)
    - 429 stops retrying immediately
    - Exhausted retries raise FixGenerationError
"""
import json
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from healer.core.config import FIX_SERVICE_TIMEOUT, FIX_SERVICE_TOKEN, FIX_SERVICE_URL
from healer.core.errors import FixGenerationError
from healer.models.candidate_fix import CandidateFix, parse_fix
from healer.models.issue import Issue

logger = logging.getLogger(__name__)

_DEFAULT_MAX_RETRIES = 2


# ---------------------------------------------------------------------------
# Response Parsing
# ---------------------------------------------------------------------------
def parse_fix_response(data, issue: Issue, provider: str = "fix-service") -> Optional[CandidateFix]:
    """
    Strictly validate a decoded service response.

    Parameters
    ----------
    data : Any
        Decoded JSON body.
    issue : Issue
        Issue the fix was requested for; fills ``issue_key`` and the
        default target file when the service leaves them out.
    provider : str
        Recorded on the fix for reporting.

    Returns
    -------
    CandidateFix | None
        ``None`` when the service explicitly returned no fix.

    Raises
    ------
    FixGenerationError
        Malformed body or a fix that fails schema validation.
    """
    if not isinstance(data, dict):
        raise FixGenerationError("INVALID_RESPONSE: expected a JSON object")
    if "fix" not in data:
        raise FixGenerationError("INVALID_RESPONSE: missing 'fix' field")

    raw_fix = data["fix"]
    if raw_fix is None:
        return None
    if not isinstance(raw_fix, dict):
        raise FixGenerationError("INVALID_RESPONSE: 'fix' must be an object or null")

    raw_fix = dict(raw_fix)
    raw_fix.setdefault("issue_key", issue.identity_key)
    raw_fix.setdefault("provider", provider)
    if not raw_fix.get("target_file") and issue.location and issue.location.file:
        raw_fix["target_file"] = issue.location.file

    try:
        return parse_fix(raw_fix)
    except ValidationError as e:
        raise FixGenerationError(f"INVALID_RESPONSE: {e.error_count()} validation error(s)") from e


# ---------------------------------------------------------------------------
# Fix Service Client
# ---------------------------------------------------------------------------
class FixServiceClient:
    """
    ``FixGenerator`` implementation backed by an HTTP service.

    Usage:
        client = FixServiceClient()
        fix = await client.generate(issue, context)
        await client.close()
    """

    def __init__(
        self,
        url: str = FIX_SERVICE_URL,
        token: Optional[str] = FIX_SERVICE_TOKEN,
        timeout: float = FIX_SERVICE_TIMEOUT,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _get_http(self) -> httpx.AsyncClient:
        """Lazy-initialise the HTTP client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def generate(self, issue: Issue, context: dict) -> Optional[CandidateFix]:
        """
        Ask the service for a candidate fix.

        Returns
        -------
        CandidateFix | None
            ``None`` when the service has nothing to offer.

        Raises
        ------
        FixGenerationError
            Invalid response, client error, or all retries exhausted.
        """
        http = await self._get_http()
        payload = {"issue": issue.model_dump(mode="json"), "context": context}
        last_error = "no attempt made"

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await http.post(self.url, json=payload, headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning("Fix service attempt %d: timeout", attempt)
                continue
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                last_error = f"HTTP {status}"
                logger.warning("Fix service attempt %d: HTTP %d", attempt, status)
                if status == 429 or status < 500:
                    break
                continue
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning("Fix service attempt %d: %s", attempt, e)
                continue
            except json.JSONDecodeError as e:
                raise FixGenerationError(f"INVALID_RESPONSE: body is not JSON ({e})") from e

            fix = parse_fix_response(data, issue)
            if fix is None:
                logger.info("Fix service returned no fix for %s", issue.identity_key)
            else:
                logger.info(
                    "Fix service returned %s fix for %s (confidence %.0f)",
                    fix.kind, issue.identity_key, fix.confidence,
                )
            return fix

        raise FixGenerationError(
            f"Fix service failed after {self.max_retries} attempt(s): {last_error}"
        )
