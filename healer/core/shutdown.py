"""
Shutdown
========
Cooperative cancellation for the remediation loop.

``CancellationToken`` is injected into the loop controller and checked at
well-defined points (iteration start, batch start, before each apply).
``GracefulShutdown`` is the process-boundary adapter that turns SIGINT /
SIGTERM into a token cancellation; nothing inside the loop touches signals.
"""
import asyncio
import logging
import signal
import sys
import threading
from typing import Any, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe, one-way cancellation flag with a reason."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
        logger.warning("Cancellation requested: %s", reason)


class GracefulShutdown:
    """
    Maps SIGINT / SIGTERM onto a ``CancellationToken``.

    Usage::

        token = CancellationToken()
        shutdown = GracefulShutdown(token)
        shutdown.install()
        ...
        shutdown.uninstall()

    A second signal while the first is still being handled is ignored.
    """

    _SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, token: CancellationToken) -> None:
        self.token = token
        self._handling = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous: dict = {}

    def install(self) -> None:
        """
        Register signal handlers.

        On Unix with a running event loop, uses ``loop.add_signal_handler``;
        otherwise falls back to ``signal.signal``.
        """
        if sys.platform != "win32":
            try:
                self._loop = asyncio.get_running_loop()
                for sig in self._SIGNALS:
                    self._loop.add_signal_handler(sig, self._async_handler, sig)
                return
            except (RuntimeError, NotImplementedError):
                self._loop = None
        for sig in self._SIGNALS:
            self._previous[sig] = signal.signal(sig, self._signal_handler)

    def uninstall(self) -> None:
        if self._loop is not None:
            for sig in self._SIGNALS:
                self._loop.remove_signal_handler(sig)
            self._loop = None
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()

    def _signal_handler(self, signum: int, frame: Any) -> None:
        self._handle(signum)

    def _async_handler(self, signum: int) -> None:
        self._handle(signum)

    def _handle(self, signum: int) -> None:
        if self._handling:
            return
        self._handling = True
        try:
            logger.warning("Received signal %s -- initiating graceful shutdown", signum)
            self.token.cancel(f"signal {signal.Signals(signum).name}")
        finally:
            self._handling = False
