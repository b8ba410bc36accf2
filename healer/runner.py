"""
Runner
======
Process boundary for a remediation run: installs the signal adapter,
optionally resumes persisted state, runs the loop and maps the outcome
to an exit code (0 only for status=success).
"""
import asyncio
import logging
from typing import Optional

from healer.agents.collaborators import FixGenerator, IssueDetector
from healer.agents.loop_controller import LoopController
from healer.core.config import LoopConfig
from healer.core.errors import HealerError
from healer.core.shutdown import CancellationToken, GracefulShutdown

logger = logging.getLogger(__name__)


async def run_controller(controller: LoopController, resume: bool = False) -> int:
    shutdown = GracefulShutdown(controller.token)
    shutdown.install()
    try:
        if resume and not await controller.resume():
            logger.info("Nothing to resume; starting a new session")
        report = await controller.run()
        return report.exit_code
    except HealerError as exc:
        logger.error("Remediation run failed: %s", exc)
        return 1
    finally:
        shutdown.uninstall()
        close = getattr(controller.generator, "close", None)
        if close is not None:
            await close()


def run_to_exit_code(
    detector: IssueDetector,
    generator: FixGenerator,
    config: Optional[LoopConfig] = None,
    resume: bool = False,
) -> int:
    """
    Run the loop to completion in a fresh event loop.

    Returns
    -------
    int
        0 when the run ended with status=success, 1 otherwise
        (failed, interrupted, or a fatal error).
    """
    controller = LoopController(detector, generator, config, token=CancellationToken())
    return asyncio.run(run_controller(controller, resume=resume))
