"""Cooperative cancellation for long-running phases."""

import asyncio
import signal

import structlog

from .exceptions import MigrationInterrupted

logger = structlog.get_logger()


class CancellationToken:
    """Flag checked by phases between batches.

    In-flight items always finish; the orchestrator then flushes the change
    log and checkpoint before stopping.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self, reason: str = "cancellation requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.warning("Cancellation requested", reason=reason)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise MigrationInterrupted(self.reason or "cancellation requested")


def install_signal_handlers(token: CancellationToken) -> list[signal.Signals]:
    """Route SIGINT/SIGTERM to ``token`` on the running loop.

    Returns the signals that were installed (none on platforms without
    ``add_signal_handler`` support).
    """
    loop = asyncio.get_running_loop()
    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, token.request_cancel, f"received {signum.name}")
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    return installed


def remove_signal_handlers(signals: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for signum in signals:
        loop.remove_signal_handler(signum)
