"""Shared data type definitions (TransferWindow, ChunkOutcome, ProbeResult, etc.)."""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from common.constants import EXTENSION_MIME_TYPES


class DeviceClass(str, Enum):
    """Device profile family used to size chunks and shape retries."""

    MOBILE = "mobile"
    DESKTOP = "desktop"


class SequencerState(str, Enum):
    """Lifecycle states of one chunk sequencer run."""

    IDLE = "idle"
    SENDING = "sending"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    ADVANCING = "advancing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RejectReason(str, Enum):
    """Machine-readable reason attached to a rejected chunk."""

    EXPIRED = "expired"
    AUTH_FAILED = "auth_failed"
    PERMISSION_DENIED = "permission_denied"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    UNEXPECTED_STATUS = "unexpected_status"
    NO_PROGRESS = "no_progress"


class AmbiguousReason(str, Enum):
    """Why a transfer ended without any server signal."""

    NETWORK = "network"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class TransferWindow:
    """
    Closed byte range [start_byte, end_byte] of a file of total_size bytes.
    """
    start_byte: int
    end_byte: int
    total_size: int

    def __post_init__(self) -> None:
        if self.total_size <= 0:
            raise ValueError(f"total_size must be positive, got {self.total_size}")
        if not 0 <= self.start_byte <= self.end_byte < self.total_size:
            raise ValueError(
                f"Invalid window [{self.start_byte}, {self.end_byte}] for total {self.total_size}"
            )

    @classmethod
    def next(cls, confirmed_bytes: int, chunk_size: int, total_size: int) -> 'TransferWindow':
        """
        Build the window that starts right after the confirmed prefix.

        Args:
            confirmed_bytes: Count of leading bytes already confirmed
            chunk_size: Desired window length in bytes
            total_size: Total file size in bytes

        Returns:
            TransferWindow whose end is clamped to the last byte of the file
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        end_byte = min(confirmed_bytes + chunk_size, total_size) - 1
        return cls(start_byte=confirmed_bytes, end_byte=end_byte, total_size=total_size)

    @property
    def size(self) -> int:
        return self.end_byte - self.start_byte + 1

    @property
    def is_last(self) -> bool:
        return self.end_byte == self.total_size - 1

    @property
    def end_exclusive(self) -> int:
        return self.end_byte + 1


@dataclass(frozen=True)
class Confirmed:
    """The server acknowledged the chunk; bytes_confirmed is an exclusive count."""
    bytes_confirmed: int
    is_file_complete: bool = False
    remote_file_id: Optional[str] = None


@dataclass(frozen=True)
class Rejected:
    """The server answered with an error status."""
    reason: RejectReason
    recoverable: bool
    status_code: Optional[int] = None
    message: str = ""


@dataclass(frozen=True)
class Ambiguous:
    """Transport-level failure with no HTTP status; must be probed."""
    reason: AmbiguousReason = AmbiguousReason.NETWORK
    detail: str = ""


ChunkOutcome = Union[Confirmed, Rejected, Ambiguous]


@dataclass(frozen=True)
class ProbeResult:
    """Ground truth read from the server by a status probe."""
    ok: bool
    confirmed_bytes: int = 0
    complete: bool = False
    remote_file_id: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def failed(cls, status_code: Optional[int] = None) -> 'ProbeResult':
        return cls(ok=False, status_code=status_code)


@dataclass(frozen=True)
class FileMetadata:
    """
    Declared properties of the payload sent to the session initiator.
    """
    name: str
    size: int
    mime_type: str

    @classmethod
    def from_path(cls, path: Union[str, Path], mime_type: Optional[str] = None) -> 'FileMetadata':
        """
        Describe a local file, guessing its MIME type from the extension.

        Args:
            path: Path to the local file
            mime_type: Explicit MIME type, overrides the guess

        Returns:
            FileMetadata for the file
        """
        path = Path(path)
        if mime_type is None:
            mime_type = EXTENSION_MIME_TYPES.get(path.suffix.lower(), "application/octet-stream")
        return cls(name=path.name, size=os.path.getsize(path), mime_type=mime_type)


@dataclass(frozen=True)
class UploadSession:
    """Opaque resumable target plus the session id used for finalization."""
    session_id: str
    upload_target: str
