"""Per-upload run context shared by the sequencer (writer) and the watchdog (reader)."""

import time
from dataclasses import dataclass, field
from typing import Optional

from common.types import DeviceClass, RejectReason, SequencerState
from uploader.progress import ProgressSnapshot


@dataclass
class UploadRunContext:
    """
    Mutable state of one upload run.

    Only the ChunkSequencer writes to this object. The watchdog and progress
    sinks read it through snapshot() and seconds_since_activity().
    """
    total_size: int
    device_class: DeviceClass
    confirmed_bytes: int = 0
    chunk_index: int = 0
    attempt: int = 1
    in_flight_bytes: int = 0
    state: SequencerState = SequencerState.IDLE
    status: str = ""
    last_reason: Optional[RejectReason] = None
    trusted_windows: int = 0
    started_at: float = field(default_factory=time.monotonic)
    last_activity_at: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        """Record that bytes moved or a response arrived."""
        self.last_activity_at = time.monotonic()

    def seconds_since_activity(self) -> float:
        return time.monotonic() - self.last_activity_at

    @property
    def is_complete(self) -> bool:
        return self.confirmed_bytes >= self.total_size

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            confirmed_bytes=self.confirmed_bytes,
            total_size=self.total_size,
            in_flight_bytes=self.in_flight_bytes,
            chunk_index=self.chunk_index,
            attempt=self.attempt,
            state=self.state,
            status=self.status,
        )
