"""Read-only progress snapshots and the fire-and-forget sink helper."""

import math
from dataclasses import dataclass
from typing import Callable, Optional

from common.logging_config import get_logger
from common.types import SequencerState

logger = get_logger(__name__)


def progress_percent(confirmed_bytes: int, total_size: int) -> float:
    """
    Percentage of the file confirmed, for display.

    Values under 10% keep one decimal place, everything else is floored to
    a whole number. Both are floored, so the value never overstates progress.

    Args:
        confirmed_bytes: Bytes confirmed so far
        total_size: Total file size in bytes

    Returns:
        Percentage between 0 and 100
    """
    if total_size <= 0:
        return 0.0
    raw = confirmed_bytes * 100 / total_size
    if raw < 10:
        return math.floor(raw * 10) / 10
    return float(math.floor(raw))


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of an upload, safe to hand to any sink."""
    confirmed_bytes: int
    total_size: int
    in_flight_bytes: int = 0
    chunk_index: int = 0
    attempt: int = 1
    state: SequencerState = SequencerState.IDLE
    status: str = ""

    @property
    def percent(self) -> float:
        return progress_percent(self.confirmed_bytes, self.total_size)

    @property
    def sent_bytes(self) -> int:
        """Confirmed bytes plus the bytes of the current chunk already written."""
        return min(self.confirmed_bytes + self.in_flight_bytes, self.total_size)


ProgressSink = Callable[[ProgressSnapshot], None]


def emit_progress(sink: Optional[ProgressSink], snapshot: ProgressSnapshot) -> None:
    """Deliver a snapshot to a sink; sink errors are logged and never propagate."""
    if sink is None:
        return
    try:
        sink(snapshot)
    except Exception as e:
        logger.warning(f"Progress sink raised {type(e).__name__}: {e}")
