"""
Chunk sequencer: drives the strictly ordered loop over byte ranges.

States: IDLE -> SENDING -> ADVANCING, or SENDING -> VERIFYING -> ADVANCING |
RETRYING -> SENDING, ending in COMPLETE, FAILED or CANCELLED. confirmed_bytes
only moves forward, and only on a server answer, a status probe, or the
trust-mode shortcut near the end of the file.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from common.constants import MIB, TRUST_MODE_THRESHOLD
from common.logging_config import get_logger
from common.types import (
    ChunkOutcome,
    Confirmed,
    ProbeResult,
    Rejected,
    RejectReason,
    SequencerState,
    TransferWindow,
)
from uploader.context import UploadRunContext
from uploader.exceptions import (
    FATAL_REJECTIONS,
    RetryBudgetExhaustedError,
    UploadCancelledError,
    UploadFailedError,
)
from uploader.file_handle import FileHandle
from uploader.policy import DeviceProfile
from uploader.progress import ProgressSink, emit_progress

logger = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class Transfer(Protocol):
    async def transfer(
        self,
        window: TransferWindow,
        chunk: bytes,
        upload_target: str,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> ChunkOutcome:
        ...


class Prober(Protocol):
    async def probe(self, upload_target: str, total_size: int) -> ProbeResult:
        ...


@dataclass(frozen=True)
class SequencerResult:
    """
    Summary of a completed sequencer run.

    confirmed_ranges lists every half-open [start, end) byte range the run
    advanced over, in order; trusted_ranges is the subset accepted without
    server confirmation.
    """
    confirmed_bytes: int
    total_size: int
    windows: int
    attempts: int
    remote_file_id: Optional[str]
    confirmed_ranges: tuple[tuple[int, int], ...]
    trusted_ranges: tuple[tuple[int, int], ...]

    @property
    def trusted(self) -> bool:
        return bool(self.trusted_ranges)


def trust_mode_applies(window: TransferWindow, confirmed_bytes: int) -> bool:
    """
    Whether a failed attempt on this window is accepted instead of retried.

    True for the last window of the file, or once at least 90% of the file
    is confirmed. Near the end a lost response is far likelier than lost
    data, and re-sending bytes the server already has can be rejected as
    out of range. This accepts a small false-positive risk, and applies to
    fatal rejections too; the finalizer then has the last word.

    Args:
        window: Window whose transfer failed
        confirmed_bytes: Bytes confirmed before the window

    Returns:
        True when the window should be treated as confirmed
    """
    if window.is_last:
        return True
    return confirmed_bytes >= window.total_size * TRUST_MODE_THRESHOLD


def _megabytes(num_bytes: int) -> str:
    return f"{num_bytes / MIB:.1f}MB"


class ChunkSequencer:
    """
    Sends a file window by window, verifying every failure with a status probe.
    """

    def __init__(
        self,
        transfer: Transfer,
        prober: Prober,
        profile: DeviceProfile,
        context: Optional[UploadRunContext] = None,
        progress_sink: Optional[ProgressSink] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        """
        Initialize the sequencer.

        Args:
            transfer: Chunk transfer primitive
            prober: Upload status prober
            profile: Device profile selected for this upload
            context: Run context to write into; created by run() when omitted
            progress_sink: Receives read-only progress snapshots
            sleep: Awaitable delay used for retry backoff and pacing
        """
        self.transfer = transfer
        self.prober = prober
        self.profile = profile
        self.context = context
        self.progress_sink = progress_sink
        self._sleep = sleep
        self._cancel_requested = False
        self._inflight: Optional[asyncio.Future] = None
        self._windows = 0
        self._attempts = 0
        self._remote_file_id: Optional[str] = None
        self._confirmed_ranges: list[tuple[int, int]] = []
        self._trusted_ranges: list[tuple[int, int]] = []

    def cancel(self) -> None:
        """Request cancellation and abort whatever request or delay is in flight."""
        self._cancel_requested = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    async def run(self, file_handle: FileHandle, upload_target: str) -> SequencerResult:
        """
        Upload every byte of the file to the target, in order.

        Args:
            file_handle: Source of the bytes
            upload_target: Resumable upload URI

        Returns:
            SequencerResult once confirmed_bytes equals the file size

        Raises:
            UploadFailedError: On a fatal rejection or an exhausted retry budget
            UploadCancelledError: When cancel() was called
        """
        total_size = file_handle.total_size
        if self.context is None:
            self.context = UploadRunContext(total_size=total_size, device_class=self.profile.device_class)
        ctx = self.context
        if ctx.total_size != total_size:
            raise ValueError(f"Context total {ctx.total_size} does not match file size {total_size}")

        estimated_windows = math.ceil((total_size - ctx.confirmed_bytes) / self.profile.chunk_size)
        logger.info(
            f"Starting chunked upload: {total_size} bytes in ~{estimated_windows} chunk(s) "
            f"of {_megabytes(self.profile.chunk_size)} [device={self.profile.device_class.value}]"
        )

        try:
            while ctx.confirmed_bytes < total_size:
                self._check_cancelled()
                window = TransferWindow.next(ctx.confirmed_bytes, self.profile.chunk_size, total_size)
                await self._send_window(window, file_handle, upload_target)

                if ctx.confirmed_bytes < total_size:
                    self._set_state(SequencerState.IDLE)
                    await self._pause(self.profile.pacing_delay)
        except UploadCancelledError:
            self._set_state(SequencerState.CANCELLED, "CANCELLED")
            logger.info(f"Upload cancelled after {ctx.confirmed_bytes}/{total_size} bytes")
            raise
        except UploadFailedError as e:
            self._set_state(SequencerState.FAILED, e.message)
            logger.error(
                f"Upload failed after {ctx.confirmed_bytes}/{total_size} bytes: "
                f"{e.message} [reason={e.reason.value if e.reason else None}]"
            )
            raise

        self._set_state(SequencerState.COMPLETE, "COMPLETE")
        logger.info(
            f"All chunks uploaded: {self._windows} window(s), {self._attempts} attempt(s), "
            f"{len(self._trusted_ranges)} trusted"
        )
        return SequencerResult(
            confirmed_bytes=ctx.confirmed_bytes,
            total_size=total_size,
            windows=self._windows,
            attempts=self._attempts,
            remote_file_id=self._remote_file_id,
            confirmed_ranges=tuple(self._confirmed_ranges),
            trusted_ranges=tuple(self._trusted_ranges),
        )

    async def _send_window(self, window: TransferWindow, file_handle: FileHandle, upload_target: str) -> None:
        """Drive one window to ADVANCING, or raise."""
        ctx = self.context
        attempt = 1

        while True:
            self._check_cancelled()
            ctx.attempt = attempt
            self._set_state(SequencerState.SENDING, self._uploading_status(ctx.confirmed_bytes))
            logger.info(
                f"Chunk {self._windows + 1}: bytes {window.start_byte}-{window.end_byte}/{window.total_size} "
                f"(attempt {attempt}/{self.profile.max_retries})"
            )

            try:
                chunk: Optional[bytes] = file_handle.read_window(window)
            except (OSError, ValueError) as e:
                raise UploadFailedError(
                    f"Cannot read bytes {window.start_byte}-{window.end_byte} of the file: {e}",
                    ctx.confirmed_bytes,
                ) from e
            try:
                outcome = await self._run_cancellable(
                    self.transfer.transfer(window, chunk, upload_target, self._relay_chunk_progress)
                )
            finally:
                chunk = None
                ctx.in_flight_bytes = 0
            self._attempts += 1

            if isinstance(outcome, Confirmed):
                ctx.touch()
                if outcome.is_file_complete:
                    self._remote_file_id = outcome.remote_file_id
                    self._advance(window.total_size)
                    return
                if outcome.bytes_confirmed > ctx.confirmed_bytes:
                    self._advance(outcome.bytes_confirmed)
                    return
                outcome = Rejected(
                    RejectReason.NO_PROGRESS,
                    True,
                    message=f"Server confirmed no bytes past {ctx.confirmed_bytes}",
                )

            if isinstance(outcome, Rejected):
                ctx.last_reason = outcome.reason
                logger.warning(
                    f"Chunk {window.start_byte}-{window.end_byte} rejected "
                    f"[reason={outcome.reason.value}, recoverable={outcome.recoverable}], verifying with server"
                )
            else:
                logger.warning(
                    f"Chunk {window.start_byte}-{window.end_byte} ended without a response "
                    f"[{outcome.reason.value}: {outcome.detail}], verifying with server"
                )

            self._set_state(SequencerState.VERIFYING, "VERIFYING...")
            probe = await self._run_cancellable(self.prober.probe(upload_target, window.total_size))

            if probe.ok:
                ctx.touch()
                if probe.complete:
                    logger.info("Server confirms the upload is complete")
                    self._remote_file_id = probe.remote_file_id
                    self._advance(window.total_size)
                    return
                if probe.confirmed_bytes >= window.end_exclusive:
                    logger.info(f"Server confirms chunk {window.start_byte}-{window.end_byte} was received")
                    self._advance(probe.confirmed_bytes)
                    return
                if probe.confirmed_bytes > ctx.confirmed_bytes:
                    self._advance(probe.confirmed_bytes, window_done=False)
                    window = TransferWindow(ctx.confirmed_bytes, window.end_byte, window.total_size)

            fatal = isinstance(outcome, Rejected) and not outcome.recoverable

            # Trust mode takes precedence over fatal rejections
            if trust_mode_applies(window, ctx.confirmed_bytes):
                if fatal:
                    logger.warning(
                        f"Trust mode: ignoring fatal rejection [reason={outcome.reason.value}, "
                        f"status={outcome.status_code}] on chunk {window.start_byte}-{window.end_byte}"
                    )
                if probe.ok:
                    logger.warning(
                        f"Trust mode: accepting chunk {window.start_byte}-{window.end_byte} although the "
                        f"server reports {probe.confirmed_bytes} bytes (accepted risk)"
                    )
                else:
                    logger.warning(
                        f"Trust mode: accepting chunk {window.start_byte}-{window.end_byte} without "
                        f"server confirmation (accepted risk)"
                    )
                self._advance(window.end_exclusive, trusted=True)
                return

            self._set_state(SequencerState.RETRYING)

            if fatal:
                error_cls = FATAL_REJECTIONS.get(outcome.reason, UploadFailedError)
                raise error_cls(
                    outcome.message or f"Upload rejected ({outcome.reason.value})",
                    ctx.confirmed_bytes,
                    outcome.reason,
                    outcome.status_code,
                )

            if attempt >= self.profile.max_retries:
                last_reason = outcome.reason if isinstance(outcome, Rejected) else ctx.last_reason
                detail = outcome.message if isinstance(outcome, Rejected) else "Network error"
                raise RetryBudgetExhaustedError(
                    f"{detail or 'Chunk upload failed'} after {attempt} attempts",
                    ctx.confirmed_bytes,
                    last_reason,
                    outcome.status_code if isinstance(outcome, Rejected) else None,
                    attempts=attempt,
                )

            delay = self.profile.retry_delay(attempt)
            ctx.status = f"RETRY {attempt}/{self.profile.max_retries}..."
            emit_progress(self.progress_sink, ctx.snapshot())
            logger.info(f"Retrying in {delay}s ({attempt}/{self.profile.max_retries})")
            await self._pause(delay)
            attempt += 1

    def _advance(self, confirmed_bytes: int, trusted: bool = False, window_done: bool = True) -> None:
        """Move confirmed_bytes forward; it never moves back."""
        ctx = self.context
        new_confirmed = min(max(ctx.confirmed_bytes, confirmed_bytes), ctx.total_size)
        if new_confirmed > ctx.confirmed_bytes:
            advanced = (ctx.confirmed_bytes, new_confirmed)
            self._confirmed_ranges.append(advanced)
            if trusted:
                self._trusted_ranges.append(advanced)
                ctx.trusted_windows += 1
        ctx.confirmed_bytes = new_confirmed

        if window_done:
            self._windows += 1
            ctx.chunk_index = self._windows
            logger.info(
                f"Chunk {self._windows} complete: {_megabytes(new_confirmed)} / {_megabytes(ctx.total_size)}"
            )
        self._set_state(SequencerState.ADVANCING, self._uploading_status(new_confirmed))

    def _relay_chunk_progress(self, sent_in_chunk: int) -> None:
        """Forward in-flight chunk progress as a snapshot; never touches confirmed_bytes."""
        ctx = self.context
        ctx.in_flight_bytes = sent_in_chunk
        ctx.touch()
        ctx.status = self._uploading_status(ctx.confirmed_bytes + sent_in_chunk)
        emit_progress(self.progress_sink, ctx.snapshot())

    def _set_state(self, state: SequencerState, status: Optional[str] = None) -> None:
        ctx = self.context
        ctx.state = state
        if status is not None:
            ctx.status = status
        emit_progress(self.progress_sink, ctx.snapshot())

    def _uploading_status(self, num_bytes: int) -> str:
        total = self.context.total_size
        return f"UPLOADING... {_megabytes(min(num_bytes, total))} / {_megabytes(total)}"

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise UploadCancelledError("Upload cancelled", self.context.confirmed_bytes)

    async def _pause(self, delay: float) -> None:
        if delay <= 0:
            return
        await self._run_cancellable(self._sleep(delay))

    async def _run_cancellable(self, awaitable: Awaitable[Any]) -> Any:
        """Await a request or delay that cancel() can abort."""
        task = asyncio.ensure_future(awaitable)
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_requested:
                raise UploadCancelledError("Upload cancelled", self.context.confirmed_bytes) from None
            raise
        finally:
            self._inflight = None
