"""
Errors
======
Exception hierarchy for the remediation loop.

Per-issue failures (generation, validation stages) are caught and recorded
by the loop; persistence and detection failures propagate and end the run.
"""


class HealerError(Exception):
    """Base class for all loop errors."""


class DetectionError(HealerError):
    """The issue detector failed to produce a result."""


class FixGenerationError(HealerError):
    """The fix-generation service failed or returned an invalid fix."""


class StatePersistenceError(HealerError):
    """Loop state could not be written durably."""


class StateCorruptionError(HealerError):
    """The state file and every backup failed validation."""


class CheckpointError(HealerError):
    """Base class for checkpoint problems."""


class CheckpointNotFoundError(CheckpointError):
    def __init__(self, checkpoint_id: str) -> None:
        super().__init__(f"Checkpoint not found: {checkpoint_id}")
        self.checkpoint_id = checkpoint_id


class CheckpointIntegrityError(CheckpointError):
    def __init__(self, checkpoint_id: str, problems: list) -> None:
        super().__init__(
            f"Checkpoint {checkpoint_id} failed integrity check: {'; '.join(problems)}"
        )
        self.checkpoint_id = checkpoint_id
        self.problems = problems


class StageFailure(HealerError):
    """A required validation-pipeline stage failed."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage


class StageTimeout(StageFailure):
    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(stage, f"timed out after {timeout:.0f}s")
        self.timeout = timeout
