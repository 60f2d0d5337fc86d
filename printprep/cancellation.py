"""Cooperative cancellation shared by every stage of a run."""
import asyncio
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class Checkpoint(str, Enum):
    """Result of polling a token at a stage or chunk boundary."""

    CONTINUE = "continue"
    CANCELLED = "cancelled"


class CancellationToken:
    """
    Polled cancellation flag. Created once per run and never reset.

    Cancelling is idempotent: the first reason is kept and later calls are
    ignored. Nothing is interrupted preemptively; stages call `check()` at
    their boundaries and in-flight provider calls race against `wait()`.
    """

    def __init__(self, poll_interval: float = 0.05):
        self._cancelled = False
        self._reason: str | None = None
        self._poll_interval = poll_interval

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        logger.info(f"Cancellation requested: {reason or 'no reason given'}")

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def check(self) -> Checkpoint:
        return Checkpoint.CANCELLED if self._cancelled else Checkpoint.CONTINUE

    async def wait(self) -> None:
        """Return once the token has been cancelled."""
        while not self._cancelled:
            await asyncio.sleep(self._poll_interval)
