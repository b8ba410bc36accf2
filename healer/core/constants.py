"""
Constants
Centralised storage for severities, issue kinds, stop severities and
pipeline recommendations.
"""
SEVERITIES = ["CRITICAL", "HIGH", "MEDIUM", "LOW"]
SEVERITY_RANK = {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3}

ISSUE_KINDS = [
    "runtime", "functional", "initialization", "interaction", "console",
    "network", "performance", "memory", "regression",
]
INIT_KIND = "initialization"

# Stop severities reported by SafetyMechanisms.should_stop_loop
STOP_CRITICAL = "CRITICAL"
STOP_HIGH = "HIGH"
STOP_WARNING = "WARNING"

# Pipeline recommendations
APPLY = "APPLY"
APPLY_WITH_MONITORING = "APPLY_WITH_MONITORING"
MANUAL_REVIEW = "MANUAL_REVIEW"
REJECT = "REJECT"
APPLYABLE_RECOMMENDATIONS = frozenset({APPLY, APPLY_WITH_MONITORING})

STATE_VERSION = "1.1.0"
