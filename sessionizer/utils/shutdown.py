# ==============================================================================
# Shutdown Coordination
# ==============================================================================
"""
Cancellation context shared by the consumer loop and its partition lanes.

A ShutdownSignal is created by the entry point and passed explicitly to the
components that must observe it. OS signals only set the flag; the consumer
checks it before each poll, lets the in-flight batch drain, and releases
its resources in a deterministic order.
"""

import logging
import signal
import threading

logger = logging.getLogger(__name__)


class ShutdownSignal:
    """Thread-safe, one-way shutdown flag."""

    def __init__(self):
        self._event = threading.Event()
        self._reason: str | None = None

    def request(self, reason: str = "requested") -> None:
        """Request shutdown. Later calls keep the first reason."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def requested(self) -> bool:
        """True once shutdown has been requested."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Why shutdown was requested, if it was."""
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block until shutdown is requested or timeout elapses."""
        return self._event.wait(timeout)


def install_signal_handlers(shutdown: ShutdownSignal) -> dict[int, object]:
    """
    Route SIGINT and SIGTERM to a ShutdownSignal.

    A second signal while shutdown is already underway raises
    KeyboardInterrupt. The consumer then stops waiting for its partition
    lanes, cancels the ones that have not started and closes the pool under
    the running ones.

    Args:
        shutdown: Signal to trip

    Returns:
        Previous handlers keyed by signal number, for restore_signal_handlers()
    """

    def _handler(signum, frame):
        if shutdown.requested:
            logger.warning("Received signal %d again, aborting drain", signum)
            raise KeyboardInterrupt
        logger.info("Received signal %d, shutting down gracefully...", signum)
        shutdown.request(f"signal {signum}")

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handler)
    return previous


def restore_signal_handlers(previous: dict[int, object]) -> None:
    """Reinstall handlers returned by install_signal_handlers()."""
    for signum, handler in previous.items():
        signal.signal(signum, handler)
