"""Project-wide constants (chunk sizes, retry tuning, protocol limits)."""

MIB: int = 1024 * 1024
GIB: int = 1024 * MIB

# Resumable sessions require every non-final chunk to be a multiple of 256 KiB
CHUNK_GRANULARITY_BYTES: int = 256 * 1024

DESKTOP_CHUNK_SIZE_BYTES: int = 70 * MIB
MOBILE_CHUNK_SIZE_BYTES: int = 10 * MIB

MAX_FILE_SIZE_BYTES: int = 5 * GIB
ALLOWED_MIME_TYPES: tuple[str, ...] = ("video/mp4", "video/quicktime")
EXTENSION_MIME_TYPES: dict[str, str] = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mov": "video/quicktime",
    ".qt": "video/quicktime",
}

DESKTOP_MAX_RETRIES: int = 5
MOBILE_MAX_RETRIES: int = 3

DESKTOP_RETRY_DELAY_BASE_SECONDS: float = 2.0
DESKTOP_RETRY_DELAY_MAX_SECONDS: float = 30.0
MOBILE_RETRY_DELAY_BASE_SECONDS: float = 1.0
MOBILE_RETRY_DELAY_MAX_SECONDS: float = 5.0

DESKTOP_CHUNK_TIMEOUT_SECONDS: float = 300.0
MOBILE_CHUNK_TIMEOUT_SECONDS: float = 120.0

STATUS_PROBE_ATTEMPTS: int = 3
STATUS_PROBE_TIMEOUT_SECONDS: float = 30.0
DESKTOP_PROBE_DELAY_BASE_SECONDS: float = 2.0
MOBILE_PROBE_DELAY_BASE_SECONDS: float = 1.0

DESKTOP_CHUNK_PACING_SECONDS: float = 0.1
MOBILE_CHUNK_PACING_SECONDS: float = 0.25

CONNECT_TIMEOUT_SECONDS: float = 15.0

# Fraction of the file that must be confirmed before a failed chunk is trusted
TRUST_MODE_THRESHOLD: float = 0.9

# Slice size used to stream a chunk body and report in-flight progress
PROGRESS_PIECE_BYTES: int = 256 * 1024

WATCHDOG_STALL_SECONDS: float = 60.0
WATCHDOG_INTERVAL_SECONDS: float = 5.0

MOBILE_DOWNLINK_THRESHOLD_MBPS: float = 5.0
SLOW_EFFECTIVE_TYPES: tuple[str, ...] = ("slow-2g", "2g", "3g")

HTTP_RESUME_INCOMPLETE: int = 308
HTTP_TOO_MANY_REQUESTS: int = 429
RETRYABLE_STATUS_CODES: tuple[int, ...] = (500, 502, 503, 504, 408)

DRIVE_RESUMABLE_UPLOAD_URL: str = (
    "https://www.googleapis.com/upload/drive/v3/files"
    "?uploadType=resumable&supportsAllDrives=true"
)

DEFAULT_INIT_ACTION: str = "warzone_init_upload"
DEFAULT_FINALIZE_ACTION: str = "warzone_finalize_upload"
COMPLETION_MESSAGE: str = "Upload complete! Your footage has been submitted for review."
