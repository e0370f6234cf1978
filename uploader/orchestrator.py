"""
Session orchestrator: Initiator -> Sequencer -> Finalizer for one upload.

Validation runs before any network call. Chunk-level failures are resolved
inside the sequencer; whatever escapes it is re-raised here carrying the
confirmed byte count, and describe_failure() turns it into the single
message shown to the user.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import httpx

from common.constants import (
    ALLOWED_MIME_TYPES,
    CONNECT_TIMEOUT_SECONDS,
    MAX_FILE_SIZE_BYTES,
    MIB,
    WATCHDOG_INTERVAL_SECONDS,
    WATCHDOG_STALL_SECONDS,
)
from common.logging_config import get_logger
from common.types import DeviceClass, FileMetadata
from uploader.context import UploadRunContext
from uploader.credentials import AccessTokenProvider
from uploader.exceptions import (
    AuthFailedError,
    EmptyFileError,
    FileTooLargeError,
    FinalizeError,
    SessionExpiredError,
    UnsupportedMimeTypeError,
    UploadCancelledError,
    UploadError,
    ValidationError,
)
from uploader.file_handle import FileHandle
from uploader.policy import DeviceProfile, get_profile
from uploader.progress import ProgressSink, ProgressSnapshot
from uploader.sequencer import ChunkSequencer, Sleeper
from uploader.sessions import FinalizeNotifier, SessionInitiator
from uploader.status_probe import StatusProber
from uploader.transfer import ChunkTransfer
from uploader.watchdog import UploadWatchdog

logger = get_logger(__name__)

_FRIENDLY_MESSAGES: dict[type[UploadError], str] = {
    SessionExpiredError: "Upload session expired. Please start a new upload.",
    AuthFailedError: "Authentication failed. Please try again.",
    UploadCancelledError: "Upload cancelled.",
}


@dataclass(frozen=True)
class UploadResult:
    """Outcome of a finished upload."""
    session_id: str
    confirmed_bytes: int
    total_size: int
    remote_file_id: Optional[str]
    message: str
    trusted: bool = False


def validate_metadata(metadata: FileMetadata) -> None:
    """
    Reject payloads the upload target would refuse.

    Args:
        metadata: Declared name, size and MIME type

    Raises:
        UnsupportedMimeTypeError: MIME type outside the allow-list
        EmptyFileError: Declared size is zero
        FileTooLargeError: Declared size exceeds the ceiling
    """
    if metadata.mime_type not in ALLOWED_MIME_TYPES:
        raise UnsupportedMimeTypeError(
            f"Invalid file type: {metadata.mime_type}. Only MP4 and MOV files are allowed."
        )
    if metadata.size <= 0:
        raise EmptyFileError(f"File is empty: {metadata.name}")
    if metadata.size > MAX_FILE_SIZE_BYTES:
        raise FileTooLargeError(
            f"File too large: {metadata.size / MIB:.1f}MB exceeds the "
            f"{MAX_FILE_SIZE_BYTES // (1024 * MIB)}GB limit"
        )


def describe_failure(exc: UploadError) -> str:
    """
    Build the user-visible message for a failed upload.

    Args:
        exc: Error raised by UploadOrchestrator.upload

    Returns:
        Message with the megabytes confirmed before failure appended
    """
    message = _FRIENDLY_MESSAGES.get(type(exc)) or exc.message or "Upload failed. Please try again."
    if exc.confirmed_bytes > 0:
        message += f" ({exc.confirmed_bytes / MIB:.1f}MB uploaded before failure)"
    return message


class UploadOrchestrator:
    """
    Runs the full lifecycle of one upload at a time.
    """

    def __init__(
        self,
        initiator: SessionInitiator,
        finalizer: FinalizeNotifier,
        client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[AccessTokenProvider] = None,
        progress_sink: Optional[ProgressSink] = None,
        watchdog_stall_seconds: float = WATCHDOG_STALL_SECONDS,
        watchdog_interval_seconds: float = WATCHDOG_INTERVAL_SECONDS,
        on_stall: Optional[Callable[[ProgressSnapshot, float], None]] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            initiator: Opens the resumable session
            finalizer: Marks the session complete
            client: HTTP client for chunk and probe requests; a private one is
                created per upload when omitted
            token_provider: Bearer token source for chunk requests, if any
            progress_sink: Receives progress snapshots
            watchdog_stall_seconds: Idle time before the watchdog reports a stall
            watchdog_interval_seconds: Time between watchdog checks
            on_stall: Called by the watchdog on each stall
            sleep: Awaitable delay used for backoff and pacing
        """
        self.initiator = initiator
        self.finalizer = finalizer
        self.client = client
        self.token_provider = token_provider
        self.progress_sink = progress_sink
        self.watchdog_stall_seconds = watchdog_stall_seconds
        self.watchdog_interval_seconds = watchdog_interval_seconds
        self.on_stall = on_stall
        self._sleep = sleep
        self._sequencer: Optional[ChunkSequencer] = None
        self._cancel_requested = False
        self.context: Optional[UploadRunContext] = None

    def cancel(self) -> None:
        """Cancel the upload in progress, if any."""
        self._cancel_requested = True
        if self._sequencer is not None:
            self._sequencer.cancel()
        logger.info("Upload cancellation requested")

    async def upload_path(
        self,
        path: Union[str, Path],
        profile: Optional[DeviceProfile] = None,
    ) -> UploadResult:
        """
        Upload a local file.

        Args:
            path: Path to the file
            profile: Device profile; desktop defaults when omitted

        Returns:
            UploadResult of the finished upload
        """
        metadata = FileMetadata.from_path(path)
        validate_metadata(metadata)
        with FileHandle.open(path) as file_handle:
            return await self.upload(file_handle, metadata, profile)

    async def upload(
        self,
        file_handle: FileHandle,
        metadata: FileMetadata,
        profile: Optional[DeviceProfile] = None,
    ) -> UploadResult:
        """
        Upload a file from an open handle.

        Args:
            file_handle: Source of the bytes
            metadata: Declared name, size and MIME type
            profile: Device profile; desktop defaults when omitted

        Returns:
            UploadResult of the finished upload

        Raises:
            ValidationError: Before any network call, for a rejected payload
            SessionInitError: When no upload target could be obtained
            UploadFailedError: On a fatal chunk failure or exhausted retries
            UploadCancelledError: When cancel() was called
            FinalizeError: When the finalizer fails after every byte landed
        """
        validate_metadata(metadata)
        if metadata.size != file_handle.total_size:
            raise ValidationError(
                f"Declared size {metadata.size} does not match file size {file_handle.total_size}"
            )

        profile = profile or get_profile(DeviceClass.DESKTOP)
        self._cancel_requested = False

        logger.info(
            f"Uploading {metadata.name} ({metadata.size / MIB:.1f}MB, {metadata.mime_type}) "
            f"[device={profile.device_class.value}]"
        )

        session = await self.initiator.init_session(metadata)
        if self._cancel_requested:
            raise UploadCancelledError("Upload cancelled")

        if self.client is not None:
            result = await self._transfer_all(self.client, session.upload_target, file_handle, profile)
        else:
            timeout = httpx.Timeout(profile.chunk_timeout, connect=CONNECT_TIMEOUT_SECONDS)
            async with httpx.AsyncClient(timeout=timeout) as client:
                result = await self._transfer_all(client, session.upload_target, file_handle, profile)

        try:
            message = await self.finalizer.finalize(session.session_id)
        except FinalizeError as e:
            raise FinalizeError(e.message, result.confirmed_bytes) from e
        logger.info(f"Upload of {metadata.name} finished [session={session.session_id}]")

        return UploadResult(
            session_id=session.session_id,
            confirmed_bytes=result.confirmed_bytes,
            total_size=result.total_size,
            remote_file_id=result.remote_file_id,
            message=message,
            trusted=result.trusted,
        )

    async def _transfer_all(
        self,
        client: httpx.AsyncClient,
        upload_target: str,
        file_handle: FileHandle,
        profile: DeviceProfile,
    ):
        """Run the sequencer under a watchdog; returns its SequencerResult."""
        self.context = UploadRunContext(total_size=file_handle.total_size, device_class=profile.device_class)
        transfer = ChunkTransfer(
            client,
            profile,
            token_provider=self.token_provider,
            on_auth_failed=getattr(self.initiator, 'invalidate_credentials', None),
        )
        prober = StatusProber(client, profile, token_provider=self.token_provider, sleep=self._sleep)
        self._sequencer = ChunkSequencer(
            transfer,
            prober,
            profile,
            context=self.context,
            progress_sink=self.progress_sink,
            sleep=self._sleep,
        )
        if self._cancel_requested:
            self._sequencer.cancel()
        watchdog = UploadWatchdog(
            self.context,
            stall_seconds=self.watchdog_stall_seconds,
            interval_seconds=self.watchdog_interval_seconds,
            on_stall=self.on_stall,
        )

        await watchdog.start()
        try:
            return await self._sequencer.run(file_handle, upload_target)
        finally:
            await watchdog.stop()
            self._sequencer = None
