"""Zero-length status requests that read how many bytes the server really holds."""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx

from common.constants import CONNECT_TIMEOUT_SECONDS, HTTP_RESUME_INCOMPLETE
from common.logging_config import get_logger
from common.protocol import format_status_range, parse_drive_file, parse_range_header
from common.types import ProbeResult
from uploader.credentials import AccessTokenProvider, auth_headers
from uploader.policy import DeviceProfile

logger = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class StatusProber:
    """
    Issues `bytes */{total}` status PUTs, retrying with exponential backoff.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        profile: DeviceProfile,
        token_provider: Optional[AccessTokenProvider] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.client = client
        self.profile = profile
        self.token_provider = token_provider
        self._sleep = sleep

    async def probe(self, upload_target: str, total_size: int) -> ProbeResult:
        """
        Ask the server how many leading bytes it has durably received.

        Args:
            upload_target: Resumable upload URI
            total_size: Declared file size in bytes

        Returns:
            ProbeResult with ok=True on a 308/200/201 answer, or a failed
            result after every attempt went unanswered or errored
        """
        attempts = self.profile.probe_attempts
        last_status: Optional[int] = None

        for attempt in range(1, attempts + 1):
            logger.debug(f"Status probe attempt {attempt}/{attempts}")
            result = await self._probe_once(upload_target, total_size)
            if result.ok:
                if result.complete:
                    logger.info("Status probe: server reports the upload is complete")
                else:
                    logger.info(
                        f"Status probe: server holds {result.confirmed_bytes}/{total_size} bytes"
                    )
                return result

            last_status = result.status_code
            if attempt < attempts:
                delay = self.profile.probe_delay(attempt)
                logger.info(f"Status probe failed (attempt {attempt}/{attempts}), retrying in {delay}s")
                await self._sleep(delay)

        logger.error(f"All {attempts} status probe attempts failed [last_status={last_status}]")
        return ProbeResult.failed(last_status)

    async def _probe_once(self, upload_target: str, total_size: int) -> ProbeResult:
        """Send one status request and classify the answer."""
        try:
            headers = {
                'Content-Range': format_status_range(total_size),
                'Content-Length': '0',
                **auth_headers(self.token_provider),
            }
        except ValueError as e:
            logger.warning(f"Status probe cannot authenticate: {e}")
            return ProbeResult.failed()

        try:
            response = await asyncio.wait_for(
                self.client.put(
                    upload_target,
                    content=b"",
                    headers=headers,
                    timeout=httpx.Timeout(self.profile.probe_timeout, connect=CONNECT_TIMEOUT_SECONDS),
                ),
                timeout=self.profile.probe_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Status probe exceeded its {self.profile.probe_timeout}s budget")
            return ProbeResult.failed()
        except httpx.HTTPError as e:
            logger.warning(f"Status probe error: {type(e).__name__}: {e}")
            return ProbeResult.failed()

        if response.status_code == HTTP_RESUME_INCOMPLETE:
            confirmed = parse_range_header(response.headers.get('Range'))
            return ProbeResult(ok=True, confirmed_bytes=min(confirmed or 0, total_size), status_code=308)

        if response.status_code in (200, 201):
            drive_file = parse_drive_file(response.content)
            return ProbeResult(
                ok=True,
                confirmed_bytes=total_size,
                complete=True,
                remote_file_id=drive_file.id if drive_file else None,
                status_code=response.status_code,
            )

        logger.warning(f"Status probe returned unexpected status {response.status_code}")
        return ProbeResult.failed(response.status_code)
