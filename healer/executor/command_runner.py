"""
Command Runner
==============
Runs validation commands (tests, smoke checks, benchmarks) against a
directory and returns structured results (logs, exit code, timing).

BOUNDARY RULES:
    - The runner ONLY observes execution.
    - The runner NEVER edits files and NEVER interprets results beyond the
      exit code; scoring is the validator's job.

EXECUTION STRATEGY:
    - No sandbox image configured → local subprocess with ``cwd`` set.
    - Sandbox image configured → one ephemeral Docker container per
      command with the directory mounted at /workspace, destroyed after.

Always returns a ``CommandResult``; infrastructure failures are reported
with ``exit_code == -1`` and ``error`` set, never raised.
"""
import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional

import docker
from docker.errors import APIError, ContainerError, ImageNotFound

from healer.core.config import DEFAULT_EXECUTION_TIMEOUT

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Command Result
# ---------------------------------------------------------------------------
@dataclass
class CommandResult:
    """
    Structured output from a single command execution.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, -1 = infrastructure failure).
    output : str
        Combined stdout + stderr.
    excerpt : str
        First + last lines of the output for reports.
    duration_seconds : float
        Wall clock duration.
    timed_out : bool
        True if the command was killed by the timeout.
    environment : dict
        Where it ran: "local" or image / container id.
    error : str | None
        Infrastructure error, not command failure.
    """
    command: str = ""
    exit_code: int = -1
    output: str = ""
    excerpt: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    environment: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 20
_EXCERPT_TAIL_LINES = 20


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """Keep the first ``head`` and last ``tail`` lines of a long log."""
    lines = full_log.splitlines()
    if len(lines) <= head + tail:
        return full_log
    omitted = len(lines) - head - tail
    return "\n".join(lines[:head] + [f"... ({omitted} lines omitted) ..."] + lines[-tail:])


# ---------------------------------------------------------------------------
# Local execution
# ---------------------------------------------------------------------------
def _run_local(command: str, cwd: str, timeout: int, result: CommandResult) -> None:
    result.environment = {"mode": "local", "cwd": cwd}
    try:
        completed = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        result.exit_code = completed.returncode
        result.output = (completed.stdout or "") + (completed.stderr or "")
    except subprocess.TimeoutExpired as e:
        result.timed_out = True
        result.exit_code = -1
        partial = e.stdout or b""
        result.output = partial.decode("utf-8", errors="replace") if isinstance(partial, bytes) else partial
        result.error = f"Command timed out after {timeout}s"
        logger.warning(result.error)
    except OSError as e:
        result.exit_code = -1
        result.error = f"Failed to start command: {e}"
        logger.error(result.error)


# ---------------------------------------------------------------------------
# Container execution
# ---------------------------------------------------------------------------
_MEMORY_LIMIT = "2g"
_CPU_COUNT = 2


def _run_in_container(command: str, cwd: str, timeout: int, image: str,
                      result: CommandResult) -> None:
    container = None
    try:
        client = docker.from_env()
        logger.info("Starting container | image=%s | timeout=%ds", image, timeout)
        container = client.containers.run(
            image=image,
            command=["sh", "-c", command],
            volumes={cwd: {"bind": "/workspace", "mode": "rw"}},
            environment={"CI": "true"},
            working_dir="/workspace",
            mem_limit=_MEMORY_LIMIT,
            nano_cpus=_CPU_COUNT * 1_000_000_000,
            network_mode="none",
            labels={"project": "healer", "role": "validation"},
            detach=True,
        )
        try:
            wait_result = container.wait(timeout=timeout)
            result.exit_code = wait_result.get("StatusCode", -1)
        except Exception:
            result.timed_out = True
            result.exit_code = -1
            result.error = f"Container timed out after {timeout}s"
            logger.warning(result.error)
        result.output = container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")
        result.environment = {"mode": "docker", "image": image, "container_id": container.short_id}

    except ImageNotFound:
        result.error = f"Docker image '{image}' not found"
        result.exit_code = -1
        logger.error(result.error)

    except ContainerError as e:
        result.error = f"Container execution error: {e}"
        result.exit_code = getattr(e, "exit_status", -1)
        result.output = str(e)
        logger.error(result.error)

    except APIError as e:
        result.error = f"Docker API error: {e}"
        result.exit_code = -1
        logger.error(result.error)

    finally:
        if container is not None:
            try:
                container.remove(force=True)
            except Exception:
                logger.warning("Failed to remove container", exc_info=True)


def run_command(
    command: str,
    cwd: str,
    timeout: int = DEFAULT_EXECUTION_TIMEOUT,
    image: str = "",
) -> CommandResult:
    """
    Run ``command`` against ``cwd``.

    Parameters
    ----------
    command : str
        Shell command.
    cwd : str
        Directory the command operates on (mounted when containerised).
    timeout : int
        Seconds before the command is killed.
    image : str
        Docker image; empty string runs locally.

    Returns
    -------
    CommandResult
        Always returned, never raises.
    """
    result = CommandResult(command=command)
    started = time.monotonic()
    if image:
        _run_in_container(command, cwd, timeout, image, result)
    else:
        _run_local(command, cwd, timeout, result)
    result.duration_seconds = round(time.monotonic() - started, 3)
    result.excerpt = create_log_excerpt(result.output)
    logger.info(
        "Command finished | exit=%d | time=%.2fs | %s",
        result.exit_code, result.duration_seconds, command,
    )
    return result
