"""
Configuration
=============
Loads environment variables from .env file using python-dotenv and exposes
them as module-level defaults. The defaults seed ``LoopConfig``, the single
configuration object every loop component consumes.

Environment Variables:
    MAX_ITERATIONS          — Hard cap on loop iterations (default: 10)
    MAX_EXECUTION_MINUTES   — Wall-clock budget for a whole run (default: 120)
    PARALLEL_FIXES          — Issues processed concurrently per batch (default: 3)
    CONFIDENCE_THRESHOLD    — Minimum fix confidence to validate (default: 70)
    MAX_MEMORY_MB           — Resident memory ceiling (default: 1024)
    MAX_CHECKPOINTS         — Checkpoints retained on disk (default: 20)
    STATE_BACKUP_COUNT      — Loop-state backups retained (default: 5)
    EMERGENCY_STOP_FILE     — Marker file that halts the loop (default: .emergency-stop)
    FIX_SERVICE_URL         — Endpoint of the fix-generation service
    FIX_SERVICE_TOKEN       — Bearer token for the fix-generation service
    SANDBOX_IMAGE           — Docker image for validation commands (empty = local)
    PATCH_TRUNCATION_RATIO  — Max fraction of a file a fix may delete (default: 0.3)
    HEALER_CONFIG           — Optional YAML file read by the status API

YAML Overrides:
    ``load_config(path)`` reads a YAML document shaped like ``LoopConfig``
    and merges it over the environment defaults. Unknown keys are rejected.
"""
import os
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

load_dotenv()

# Loop limits
MAX_ITERATIONS = int(os.getenv("MAX_ITERATIONS", 10))
MAX_EXECUTION_MINUTES = float(os.getenv("MAX_EXECUTION_MINUTES", 120))
PARALLEL_FIXES = int(os.getenv("PARALLEL_FIXES", 3))
CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", 70))

# Safety
MAX_CONSECUTIVE_FAILURES = int(os.getenv("MAX_CONSECUTIVE_FAILURES", 5))
MAX_MEMORY_MB = float(os.getenv("MAX_MEMORY_MB", 1024))
MAX_ERROR_RETRIES = int(os.getenv("MAX_ERROR_RETRIES", 3))
EMERGENCY_STOP_FILE = os.getenv("EMERGENCY_STOP_FILE", ".emergency-stop")

# Persistence
CHECKPOINT_DIR = os.getenv("CHECKPOINT_DIR", ".healer-checkpoints")
MAX_CHECKPOINTS = int(os.getenv("MAX_CHECKPOINTS", 20))
STATE_DIR = os.getenv("STATE_DIR", ".validation-loop-state")
STATE_BACKUP_COUNT = int(os.getenv("STATE_BACKUP_COUNT", 5))
RESULTS_PATH = os.getenv("RESULTS_PATH", "results.json")
CONFIG_PATH = os.getenv("HEALER_CONFIG", "")

# Fix generation service
FIX_SERVICE_URL = os.getenv("FIX_SERVICE_URL", "http://127.0.0.1:9000/fixes")
FIX_SERVICE_TOKEN = os.getenv("FIX_SERVICE_TOKEN")
FIX_SERVICE_TIMEOUT = float(os.getenv("FIX_SERVICE_TIMEOUT", 60))

# Validation sandbox (empty image = run commands as local subprocesses)
SANDBOX_IMAGE = os.getenv("SANDBOX_IMAGE", "")
DEFAULT_EXECUTION_TIMEOUT = 300

# Patch safety
PATCH_TRUNCATION_RATIO = float(os.getenv("PATCH_TRUNCATION_RATIO", 0.3))


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ConvergenceConfig(_Section):
    zero_error_threshold: int = 0
    acceptable_error_threshold: int = 0
    stall_detection_window: int = 3
    stall_threshold: float = 0.05
    oscillation_window: int = 5
    oscillation_variance_threshold: float = 0.3
    diminishing_returns_window: int = 4
    diminishing_returns_threshold: float = 0.1
    min_iterations_for_convergence: int = 2


class DomainBonusRule(_Section):
    """A business-impact signature that adds a fixed bonus to matching issues."""
    name: str
    bonus: float
    components: List[str] = Field(default_factory=list)
    kinds: List[str] = Field(default_factory=list)
    severities: List[str] = Field(default_factory=list)
    keywords_all: List[str] = Field(default_factory=list)
    keywords_any: List[str] = Field(default_factory=list)


def _default_bonus_rules() -> List[DomainBonusRule]:
    return [
        DomainBonusRule(name="blocked-primary-action", bonus=50,
                        keywords_all=["button"], keywords_any=["disabled", "not enabled"]),
        DomainBonusRule(name="data-integrity", bonus=40,
                        components=["persistence", "save-system", "storage", "database"],
                        kinds=["runtime"]),
        DomainBonusRule(name="data-integrity-critical", bonus=40,
                        components=["persistence", "save-system", "storage", "database"],
                        severities=["CRITICAL"]),
        DomainBonusRule(name="startup-state", bonus=45,
                        kinds=["initialization"], keywords_any=["state", "initialization"]),
        DomainBonusRule(name="resource-leak", bonus=25,
                        kinds=["performance", "memory"], keywords_any=["memory", "leak"]),
    ]


class PrioritizerConfig(_Section):
    component_weights: Dict[str, float] = Field(default_factory=lambda: {
        "app-init": 85,
        "persistence": 90,
        "ui": 70,
        "performance": 60,
        "network": 50,
        "unknown": 30,
    })
    default_component_weight: float = 30
    severity_multipliers: Dict[str, float] = Field(default_factory=lambda: {
        "CRITICAL": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1,
    })
    kind_weights: Dict[str, float] = Field(default_factory=lambda: {
        "runtime": 90,
        "functional": 85,
        "regression": 85,
        "initialization": 80,
        "interaction": 75,
        "console": 60,
        "network": 55,
        "performance": 40,
        "memory": 35,
    })
    default_kind_weight: float = 50
    high_confidence_threshold: float = 80
    low_confidence_threshold: float = 40
    high_confidence_multiplier: float = 1.3
    low_confidence_multiplier: float = 0.7
    history_alpha: float = 0.3
    default_success_rate: float = 0.5
    frequency_weight: float = 0.1
    late_iteration: int = 5
    late_iteration_critical_bonus: float = 20
    dependency_boost_factor: float = 0.15
    side_effect_penalty: float = 10
    diversity_enabled: bool = True
    diversity_discount: float = 0.3
    max_reincluded: int = 5
    max_issues: int = 20
    history_limit: int = 20
    init_components: List[str] = Field(default_factory=lambda: ["app-init"])
    component_dependencies: Dict[str, List[str]] = Field(default_factory=dict)
    bonus_rules: List[DomainBonusRule] = Field(default_factory=_default_bonus_rules)


class SafetyConfig(_Section):
    max_iterations: int = MAX_ITERATIONS
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    max_memory_mb: float = MAX_MEMORY_MB
    max_execution_minutes: float = MAX_EXECUTION_MINUTES
    max_error_retries: int = MAX_ERROR_RETRIES
    min_fix_confidence: float = 30
    critical_file_confidence: float = 80
    max_regression_rate: float = 0.3
    stability_check_window: int = 3
    max_file_changes_per_iteration: int = 20
    unstable_component_min_attempts: int = 3
    unstable_component_failure_rate: float = 0.6
    emergency_stop_file: str = EMERGENCY_STOP_FILE
    resource_check_interval: float = 30.0
    stop_file_poll_interval: float = 5.0
    recent_results_limit: int = 50
    resource_history_limit: int = 100
    critical_files: List[str] = Field(default_factory=lambda: [
        "pyproject.toml", "setup.py", "setup.cfg", "requirements*.txt",
        "package.json", "package-lock.json", "index.html", "main.py", "main.js",
        "Dockerfile", "*.lock",
    ])
    destructive_patterns: List[str] = Field(default_factory=lambda: [
        r"rm\s+-rf",
        r"delete\s+.*\*",
        r"DROP\s+(TABLE|DATABASE)",
        r"TRUNCATE\s+TABLE",
        r"shutil\.rmtree\(",
        r"os\.(remove|unlink)\(",
        r"unlink\(",
        r">\s*/dev/null",
        r"\bmkfs\b",
    ])


class RollbackConfig(_Section):
    checkpoint_dir: str = CHECKPOINT_DIR
    max_checkpoints: int = MAX_CHECKPOINTS
    exclude_patterns: List[str] = Field(default_factory=lambda: [
        ".git", "node_modules", "__pycache__", ".venv", "venv", ".pytest_cache",
        "coverage", "logs", "*.log", "*.tmp", "*.pyc",
    ])


class StateConfig(_Section):
    state_dir: str = STATE_DIR
    state_file: str = "loop-state.json"
    backup_count: int = STATE_BACKUP_COUNT
    error_history_limit: int = 200
    fix_history_limit: int = 100
    iteration_history_limit: int = 20


class PipelineConfig(_Section):
    stage_timeouts: Dict[str, float] = Field(default_factory=lambda: {
        "initialize": 30,
        "create-checkpoint": 60,
        "run-stages": 300,
        "evaluate": 10,
        "apply-fix": 60,
        "post-apply-validation": 120,
        "report": 30,
        "cleanup": 30,
    })
    stage_weights: Dict[str, float] = Field(default_factory=lambda: {
        "syntax": 20,
        "functional": 30,
        "regression": 25,
        "performance": 15,
        "side_effects": 10,
    })
    apply_threshold: float = 90
    monitor_threshold: float = 75
    review_threshold: float = 50
    max_regression_failures: int = 2
    functional_command: Optional[str] = None
    regression_command: Optional[str] = None
    performance_command: Optional[str] = None
    performance_budget_seconds: float = 60.0
    smoke_command: Optional[str] = None
    sandbox_image: str = SANDBOX_IMAGE
    command_timeout: int = DEFAULT_EXECUTION_TIMEOUT
    truncation_ratio: float = PATCH_TRUNCATION_RATIO
    reports_dir: Optional[str] = None
    auto_apply: bool = True


class LoopConfig(_Section):
    """Everything a remediation run needs to know, in one validated object."""
    workspace: str = "."
    max_iterations: int = MAX_ITERATIONS
    parallel_fixes: int = Field(default=PARALLEL_FIXES, ge=1)
    confidence_threshold: float = CONFIDENCE_THRESHOLD
    results_path: str = RESULTS_PATH
    context_lines: int = 10
    convergence: ConvergenceConfig = Field(default_factory=ConvergenceConfig)
    prioritizer: PrioritizerConfig = Field(default_factory=PrioritizerConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    @model_validator(mode="after")
    def _share_iteration_cap(self) -> "LoopConfig":
        # An explicit safety.max_iterations overrides the loop cap
        if "max_iterations" not in self.safety.model_fields_set:
            self.safety.max_iterations = self.max_iterations
        return self

    def resolve(self, path: str) -> str:
        """Resolve a configured path against the workspace root."""
        if os.path.isabs(path):
            return path
        return os.path.normpath(os.path.join(os.path.abspath(self.workspace), path))


def load_config(path: Optional[str] = None, **overrides) -> LoopConfig:
    """
    Build a ``LoopConfig`` from env defaults, an optional YAML file, and
    keyword overrides (highest precedence).

    Parameters
    ----------
    path : str | None
        Path to a YAML document. Missing file raises ``FileNotFoundError``.
    **overrides
        Top-level ``LoopConfig`` fields.

    Returns
    -------
    LoopConfig
        Validated configuration.
    """
    data: dict = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        data.update(loaded)
    data.update(overrides)
    return LoopConfig.model_validate(data)
