"""Chunk transfer primitive: one bounded byte-range PUT against the upload target."""

import asyncio
from typing import AsyncIterator, Callable, Mapping, Optional

import httpx

from common.constants import (
    CONNECT_TIMEOUT_SECONDS,
    HTTP_RESUME_INCOMPLETE,
    HTTP_TOO_MANY_REQUESTS,
    PROGRESS_PIECE_BYTES,
    RETRYABLE_STATUS_CODES,
)
from common.logging_config import get_logger
from common.protocol import (
    format_content_range,
    parse_drive_file,
    parse_error_message,
    parse_range_header,
)
from common.types import (
    Ambiguous,
    AmbiguousReason,
    ChunkOutcome,
    Confirmed,
    Rejected,
    RejectReason,
    TransferWindow,
)
from uploader.credentials import AccessTokenProvider, auth_headers
from uploader.policy import DeviceProfile

logger = get_logger(__name__)

ChunkProgressCallback = Callable[[int], None]

_FATAL_STATUSES: dict[int, RejectReason] = {
    404: RejectReason.EXPIRED,
    401: RejectReason.AUTH_FAILED,
    403: RejectReason.PERMISSION_DENIED,
}


def clamp_window(window: TransferWindow, payload_length: int) -> TransferWindow:
    """
    Derive the range actually declared on the wire from the payload length.

    The upper bound never passes the last byte of the file, so a final
    chunk cannot overshoot the declared total.

    Args:
        window: Window computed by the caller
        payload_length: Number of bytes available for the window

    Returns:
        Window whose end matches the payload, clamped to total_size - 1

    Raises:
        ValueError: If the payload is empty
    """
    if payload_length <= 0:
        raise ValueError(f"Empty payload for window starting at byte {window.start_byte}")
    end_byte = min(window.start_byte + payload_length, window.total_size) - 1
    return TransferWindow(window.start_byte, end_byte, window.total_size)


def interpret_response(
    status_code: int,
    headers: Mapping[str, str],
    body: bytes,
    window: TransferWindow,
) -> ChunkOutcome:
    """
    Classify the server's answer to a chunk PUT.

    Args:
        status_code: HTTP status of the response
        headers: Response headers (case-insensitive mapping)
        body: Raw response body
        window: Window that was sent

    Returns:
        Confirmed for 308/200/201, Rejected for error statuses
    """
    if status_code == HTTP_RESUME_INCOMPLETE:
        confirmed = parse_range_header(headers.get('Range'))
        if confirmed is None:
            confirmed = window.end_exclusive
        return Confirmed(bytes_confirmed=min(confirmed, window.total_size))

    if status_code in (200, 201):
        drive_file = parse_drive_file(body)
        return Confirmed(
            bytes_confirmed=window.total_size,
            is_file_complete=True,
            remote_file_id=drive_file.id if drive_file else None,
        )

    message = parse_error_message(body, status_code)

    if status_code in _FATAL_STATUSES:
        return Rejected(_FATAL_STATUSES[status_code], False, status_code, message)

    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return Rejected(RejectReason.SERVER_ERROR, True, status_code, message)

    if status_code == HTTP_TOO_MANY_REQUESTS:
        return Rejected(RejectReason.RATE_LIMITED, True, status_code, message)

    return Rejected(RejectReason.UNEXPECTED_STATUS, False, status_code, message)


class ChunkTransfer:
    """
    Sends one chunk and resolves every failure mode to a ChunkOutcome.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        profile: DeviceProfile,
        token_provider: Optional[AccessTokenProvider] = None,
        on_auth_failed: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize the transfer primitive.

        Args:
            client: Shared async HTTP client
            profile: Device profile supplying the per-chunk time budget
            token_provider: Bearer token source, None for capability URIs
            on_auth_failed: Called once per 401 to invalidate cached credentials
        """
        self.client = client
        self.profile = profile
        self.token_provider = token_provider
        self.on_auth_failed = on_auth_failed

    async def transfer(
        self,
        window: TransferWindow,
        chunk: bytes,
        upload_target: str,
        on_progress: Optional[ChunkProgressCallback] = None,
    ) -> ChunkOutcome:
        """
        PUT one byte range to the upload target.

        Args:
            window: Range being sent
            chunk: Bytes of the range
            upload_target: Resumable upload URI
            on_progress: Receives the count of chunk bytes written so far

        Returns:
            Confirmed, Rejected or Ambiguous
        """
        window = clamp_window(window, len(chunk))
        payload = chunk[:window.size]
        content_range = format_content_range(window)

        try:
            headers = {
                'Content-Range': content_range,
                'Content-Length': str(window.size),
                'Content-Type': 'application/octet-stream',
                **auth_headers(self.token_provider),
            }
        except ValueError as e:
            logger.error(f"Cannot authenticate chunk {content_range}: {e}")
            return Rejected(RejectReason.AUTH_FAILED, False, None, str(e))

        logger.debug(f"PUT chunk {content_range} ({window.size} bytes)")

        try:
            response = await asyncio.wait_for(
                self.client.put(
                    upload_target,
                    content=self._stream_body(payload, on_progress),
                    headers=headers,
                    timeout=httpx.Timeout(self.profile.chunk_timeout, connect=CONNECT_TIMEOUT_SECONDS),
                ),
                timeout=self.profile.chunk_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Chunk {content_range} exceeded its {self.profile.chunk_timeout}s budget"
            )
            return Ambiguous(AmbiguousReason.TIMEOUT, "time budget exceeded")
        except httpx.TimeoutException as e:
            logger.warning(f"Chunk {content_range} timed out: {type(e).__name__}")
            return Ambiguous(AmbiguousReason.TIMEOUT, type(e).__name__)
        except httpx.HTTPError as e:
            logger.warning(f"Chunk {content_range} network error: {type(e).__name__}: {e}")
            return Ambiguous(AmbiguousReason.NETWORK, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error sending chunk {content_range}: {e}", exc_info=True)
            return Ambiguous(AmbiguousReason.NETWORK, f"{type(e).__name__}: {e}")

        outcome = interpret_response(response.status_code, response.headers, response.content, window)

        if isinstance(outcome, Rejected):
            logger.warning(
                f"Chunk {content_range} rejected: status={outcome.status_code} "
                f"reason={outcome.reason.value} recoverable={outcome.recoverable} message={outcome.message}"
            )
            if outcome.reason == RejectReason.AUTH_FAILED:
                self._invalidate_credentials()
        else:
            logger.debug(
                f"Chunk {content_range} confirmed: status={response.status_code} "
                f"confirmed={outcome.bytes_confirmed} complete={outcome.is_file_complete}"
            )

        return outcome

    async def _stream_body(
        self, payload: bytes, on_progress: Optional[ChunkProgressCallback]
    ) -> AsyncIterator[bytes]:
        """Yield the chunk in slices, reporting bytes handed to the transport."""
        sent = 0
        for offset in range(0, len(payload), PROGRESS_PIECE_BYTES):
            piece = payload[offset:offset + PROGRESS_PIECE_BYTES]
            yield piece
            sent += len(piece)
            if on_progress is not None:
                try:
                    on_progress(sent)
                except Exception as e:
                    logger.debug(f"Chunk progress callback raised {type(e).__name__}: {e}")

    def _invalidate_credentials(self) -> None:
        if self.token_provider is not None:
            self.token_provider.invalidate()
        if self.on_auth_failed is not None:
            try:
                self.on_auth_failed()
            except Exception as e:
                logger.error(f"Credential invalidation callback failed: {e}", exc_info=True)
