"""Resumable upload wire format (Content-Range / Range headers and JSON bodies)."""

import json
import re
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from common.types import TransferWindow

_RANGE_HEADER_RE = re.compile(r'bytes=0-(\d+)', re.IGNORECASE)


class DriveFile(BaseModel):
    """File resource returned when the final chunk lands."""
    id: Optional[str] = None
    name: Optional[str] = None
    mimeType: Optional[str] = None


class DriveErrorDetail(BaseModel):
    """Inner error object of a failed resumable request."""
    message: str = ""
    code: Optional[int] = None


class DriveErrorBody(BaseModel):
    """Error body of the form {"error": {"message": ...}}."""
    error: DriveErrorDetail


class EndpointEnvelope(BaseModel):
    """Response envelope of the hosting app: {"success": bool, "data": {...}}."""
    success: bool
    data: dict[str, Any] = {}

    @property
    def message(self) -> str:
        return str(self.data.get('message') or '')


class InitUploadData(BaseModel):
    """Payload of a successful session init."""
    session_id: str
    upload_uri: str
    message: str = ""


class FinalizeData(BaseModel):
    """Payload of a successful finalize call."""
    message: str = ""


def format_content_range(window: TransferWindow) -> str:
    """
    Format the Content-Range header value for a chunk upload.

    Args:
        window: Closed byte range being sent

    Returns:
        Header value, e.g. "bytes 0-399/1000"
    """
    return f"bytes {window.start_byte}-{window.end_byte}/{window.total_size}"


def format_status_range(total_size: int) -> str:
    """Content-Range value of a zero-length status probe: "bytes */{total}"."""
    return f"bytes */{total_size}"


def parse_range_header(value: Optional[str]) -> Optional[int]:
    """
    Parse the Range header of a 308 response into a confirmed byte count.

    Args:
        value: Header value such as "bytes=0-12345", or None

    Returns:
        Exclusive count of confirmed bytes (upper bound + 1), or None when
        the header is missing or malformed
    """
    if not value:
        return None
    match = _RANGE_HEADER_RE.search(value)
    if not match:
        return None
    return int(match.group(1)) + 1


def _load_json(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def parse_error_message(body: bytes, status_code: int) -> str:
    """
    Extract the human-readable message of an error response.

    Args:
        body: Raw response body
        status_code: HTTP status of the response

    Returns:
        error.message from the JSON body, or a generic message with the status
    """
    data = _load_json(body)
    if isinstance(data, dict):
        try:
            detail = DriveErrorBody.model_validate(data).error.message
        except ValidationError:
            detail = ""
        if detail:
            return detail
    return f"Upload failed (HTTP {status_code})"


def parse_drive_file(body: bytes) -> Optional[DriveFile]:
    """Parse the file resource from a 200/201 response body, if any."""
    data = _load_json(body)
    if not isinstance(data, dict):
        return None
    try:
        return DriveFile.model_validate(data)
    except ValidationError:
        return None
