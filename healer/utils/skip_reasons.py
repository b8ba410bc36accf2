"""
Skip Reasons
============
Standardised constants for why an issue was skipped or a fix attempt failed.

Stored in FixAttempt.reason so that the safety counters, the final report
and the status API all see the same machine-readable values.
"""


# ---------------------------------------------------------------------------
# Skip / Failure Reason Constants
# ---------------------------------------------------------------------------
SAFETY_SKIP = "SAFETY_SKIP"
NO_FIX_PRODUCED = "NO_FIX_PRODUCED"
GENERATION_FAILED = "GENERATION_FAILED"
LOW_CONFIDENCE = "LOW_CONFIDENCE"
REPEATED_FIX = "REPEATED_FIX"
PIPELINE_REJECTED = "PIPELINE_REJECTED"
ROLLED_BACK = "ROLLED_BACK"
CANCELLED = "CANCELLED"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
APPLIED = "APPLIED"

# All valid reasons (for validation)
ALL_SKIP_REASONS = frozenset({
    SAFETY_SKIP,
    NO_FIX_PRODUCED,
    GENERATION_FAILED,
    LOW_CONFIDENCE,
    REPEATED_FIX,
    PIPELINE_REJECTED,
    ROLLED_BACK,
    CANCELLED,
    UNEXPECTED_ERROR,
    APPLIED,
})

# Reasons that count as a failed fix attempt (the rest are plain skips)
ATTEMPT_FAILURES = frozenset({
    LOW_CONFIDENCE,
    REPEATED_FIX,
    PIPELINE_REJECTED,
    ROLLED_BACK,
    UNEXPECTED_ERROR,
})


def describe(reason: str, detail: str = "") -> str:
    """
    Combine a reason constant with free-text detail.

    Parameters
    ----------
    reason : str
        One of the ALL_SKIP_REASONS constants.
    detail : str
        Optional human-readable context.

    Returns
    -------
    str
        ``"REASON"`` or ``"REASON: detail"``.
    """
    return f"{reason}: {detail}" if detail else reason


def reason_code(reason: str) -> str:
    """The leading constant of a stored reason, or "" if it has none."""
    code = reason.split(":", 1)[0].strip()
    return code if code in ALL_SKIP_REASONS else ""
