"""
Chunk sizing and retry backoff policy.

Everything here is pure: the sequencer re-derives sizes and delays from a
DeviceProfile at the start of each chunk and never resizes mid-upload.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from common.constants import (
    CHUNK_GRANULARITY_BYTES,
    DESKTOP_CHUNK_PACING_SECONDS,
    DESKTOP_CHUNK_SIZE_BYTES,
    DESKTOP_CHUNK_TIMEOUT_SECONDS,
    DESKTOP_MAX_RETRIES,
    DESKTOP_PROBE_DELAY_BASE_SECONDS,
    DESKTOP_RETRY_DELAY_BASE_SECONDS,
    DESKTOP_RETRY_DELAY_MAX_SECONDS,
    MOBILE_CHUNK_PACING_SECONDS,
    MOBILE_CHUNK_SIZE_BYTES,
    MOBILE_CHUNK_TIMEOUT_SECONDS,
    MOBILE_DOWNLINK_THRESHOLD_MBPS,
    MOBILE_MAX_RETRIES,
    MOBILE_PROBE_DELAY_BASE_SECONDS,
    MOBILE_RETRY_DELAY_BASE_SECONDS,
    MOBILE_RETRY_DELAY_MAX_SECONDS,
    SLOW_EFFECTIVE_TYPES,
    STATUS_PROBE_ATTEMPTS,
    STATUS_PROBE_TIMEOUT_SECONDS,
)
from common.logging_config import get_logger
from common.types import DeviceClass

logger = get_logger(__name__)

_MOBILE_USER_AGENT_RE = re.compile(r'Mobi|Android|iPhone|iPad|iPod', re.IGNORECASE)


class BackoffShape(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True)
class DeviceProfile:
    """
    Immutable tuning bundle selected once per upload.

    Attributes:
        device_class: Profile family
        chunk_size: Bytes per window (the final window may be shorter)
        max_retries: Send attempts allowed per window
        backoff: Shape of the retry delay curve
        retry_delay_base: Delay before the first retry, in seconds
        retry_delay_max: Ceiling for any single retry delay, in seconds
        chunk_timeout: Time budget for one chunk PUT, in seconds
        probe_attempts: Status requests per probe before giving up
        probe_timeout: Time budget for one status request, in seconds
        probe_delay_base: Delay before the second status request, doubling after
        pacing_delay: Pause between consecutive chunks, in seconds
    """
    device_class: DeviceClass
    chunk_size: int
    max_retries: int
    backoff: BackoffShape
    retry_delay_base: float
    retry_delay_max: float
    chunk_timeout: float
    probe_attempts: int = STATUS_PROBE_ATTEMPTS
    probe_timeout: float = STATUS_PROBE_TIMEOUT_SECONDS
    probe_delay_base: float = DESKTOP_PROBE_DELAY_BASE_SECONDS
    pacing_delay: float = DESKTOP_CHUNK_PACING_SECONDS

    def retry_delay(self, attempt: int) -> float:
        """
        Delay to wait after the given failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            Delay in seconds, capped at retry_delay_max
        """
        attempt = max(attempt, 1)
        if self.backoff is BackoffShape.EXPONENTIAL:
            delay = self.retry_delay_base * (2 ** (attempt - 1))
        else:
            delay = self.retry_delay_base * attempt
        return min(delay, self.retry_delay_max)

    def probe_delay(self, attempt: int) -> float:
        """Delay after the given failed status request (base, 2x base, 4x base...)."""
        return self.probe_delay_base * (2 ** (max(attempt, 1) - 1))


def chunk_size(device_class: DeviceClass, configured_size: Optional[int] = None) -> int:
    """
    Compute the window size for a device class.

    Mobile devices use a fixed small size (a smaller configured size is
    honoured); desktop uses the configured size or the 70 MiB default.

    Args:
        device_class: Selected device class
        configured_size: Chunk size from configuration, in bytes

    Returns:
        Chunk size in bytes

    Raises:
        ValueError: If configured_size is not positive
    """
    if configured_size is not None and configured_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {configured_size}")

    if device_class == DeviceClass.MOBILE:
        if configured_size is None:
            return MOBILE_CHUNK_SIZE_BYTES
        return min(configured_size, MOBILE_CHUNK_SIZE_BYTES)

    return configured_size if configured_size is not None else DESKTOP_CHUNK_SIZE_BYTES


def max_retries(device_class: DeviceClass) -> int:
    return MOBILE_MAX_RETRIES if device_class == DeviceClass.MOBILE else DESKTOP_MAX_RETRIES


def retry_delay(device_class: DeviceClass, attempt: int) -> float:
    """Retry delay in seconds after the given failed attempt of a device class."""
    return get_profile(device_class).retry_delay(attempt)


def get_profile(device_class: DeviceClass, configured_chunk_size: Optional[int] = None) -> DeviceProfile:
    """
    Build the DeviceProfile for a device class.

    Args:
        device_class: Selected device class
        configured_chunk_size: Chunk size from configuration, in bytes

    Returns:
        DeviceProfile with sizing, retry, timeout and pacing settings
    """
    size = chunk_size(device_class, configured_chunk_size)
    if size % CHUNK_GRANULARITY_BYTES != 0:
        logger.warning(
            f"Chunk size {size} is not a multiple of {CHUNK_GRANULARITY_BYTES} bytes; "
            f"the server may reject non-final chunks"
        )

    if device_class == DeviceClass.MOBILE:
        return DeviceProfile(
            device_class=device_class,
            chunk_size=size,
            max_retries=MOBILE_MAX_RETRIES,
            backoff=BackoffShape.LINEAR,
            retry_delay_base=MOBILE_RETRY_DELAY_BASE_SECONDS,
            retry_delay_max=MOBILE_RETRY_DELAY_MAX_SECONDS,
            chunk_timeout=MOBILE_CHUNK_TIMEOUT_SECONDS,
            probe_delay_base=MOBILE_PROBE_DELAY_BASE_SECONDS,
            pacing_delay=MOBILE_CHUNK_PACING_SECONDS,
        )

    return DeviceProfile(
        device_class=device_class,
        chunk_size=size,
        max_retries=DESKTOP_MAX_RETRIES,
        backoff=BackoffShape.EXPONENTIAL,
        retry_delay_base=DESKTOP_RETRY_DELAY_BASE_SECONDS,
        retry_delay_max=DESKTOP_RETRY_DELAY_MAX_SECONDS,
        chunk_timeout=DESKTOP_CHUNK_TIMEOUT_SECONDS,
        probe_delay_base=DESKTOP_PROBE_DELAY_BASE_SECONDS,
        pacing_delay=DESKTOP_CHUNK_PACING_SECONDS,
    )


def detect_device_class(
    user_agent: Optional[str] = None,
    downlink_mbps: Optional[float] = None,
    effective_type: Optional[str] = None,
) -> DeviceClass:
    """
    Classify the environment from whatever signals are available.

    Args:
        user_agent: Client user agent string
        downlink_mbps: Measured downlink bandwidth in Mbps
        effective_type: Network Information API effective type (e.g. '3g', '4g')

    Returns:
        DeviceClass.MOBILE for mobile user agents or slow links, DESKTOP otherwise
    """
    if user_agent and _MOBILE_USER_AGENT_RE.search(user_agent):
        return DeviceClass.MOBILE
    if effective_type and effective_type.lower() in SLOW_EFFECTIVE_TYPES:
        return DeviceClass.MOBILE
    if downlink_mbps is not None and downlink_mbps < MOBILE_DOWNLINK_THRESHOLD_MBPS:
        return DeviceClass.MOBILE
    return DeviceClass.DESKTOP
