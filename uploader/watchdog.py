"""Soft watchdog that reports uploads making no progress."""

import asyncio
from typing import Callable, Optional

from common.constants import WATCHDOG_INTERVAL_SECONDS, WATCHDOG_STALL_SECONDS
from common.logging_config import get_logger
from common.types import SequencerState
from uploader.context import UploadRunContext
from uploader.progress import ProgressSnapshot

logger = get_logger(__name__)

_ACTIVE_STATES = (
    SequencerState.IDLE,
    SequencerState.SENDING,
    SequencerState.VERIFYING,
    SequencerState.RETRYING,
    SequencerState.ADVANCING,
)


class UploadWatchdog:
    """
    Background task that periodically checks an UploadRunContext for stalls.

    Purely observational: it reads the context and reports, it never
    changes upload state or forces a transition.
    """

    def __init__(
        self,
        context: UploadRunContext,
        stall_seconds: float = WATCHDOG_STALL_SECONDS,
        interval_seconds: float = WATCHDOG_INTERVAL_SECONDS,
        on_stall: Optional[Callable[[ProgressSnapshot, float], None]] = None,
    ):
        """
        Initialize the watchdog.

        Args:
            context: Run context to observe
            stall_seconds: Seconds without activity before a stall is reported
            interval_seconds: Time between checks
            on_stall: Called with the snapshot and idle seconds, once per stall
        """
        self.context = context
        self.stall_seconds = stall_seconds
        self.interval_seconds = interval_seconds
        self.on_stall = on_stall
        self.stalls_reported = 0
        self._stalled = False
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the background check loop."""
        if self._running:
            logger.warning("Upload watchdog already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.debug(f"Started upload watchdog (stall after {self.stall_seconds}s)")

    async def stop(self) -> None:
        """Stop the background check loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.debug("Stopped upload watchdog")

    async def _run(self) -> None:
        """Main loop for the watchdog."""
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)

                if not self._running:
                    break

                self.check()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in upload watchdog: {e}", exc_info=True)

    def check(self) -> bool:
        """
        Run one stall check.

        Returns:
            True if the upload is currently considered stalled
        """
        if self.context.state not in _ACTIVE_STATES:
            self._stalled = False
            return False

        idle = self.context.seconds_since_activity()
        if idle < self.stall_seconds:
            if self._stalled:
                logger.info("Upload progress resumed")
            self._stalled = False
            return False

        if not self._stalled:
            self._stalled = True
            self.stalls_reported += 1
            snapshot = self.context.snapshot()
            logger.warning(
                f"No upload progress for {idle:.0f}s "
                f"[state={snapshot.state.value}, confirmed={snapshot.confirmed_bytes}/{snapshot.total_size}]"
            )
            if self.on_stall is not None:
                try:
                    self.on_stall(snapshot, idle)
                except Exception as e:
                    logger.error(f"Watchdog stall callback failed: {e}", exc_info=True)
        return True
