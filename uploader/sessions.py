"""Upload session initiators and finalize notifiers (the engine's outer collaborators)."""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
from pydantic import ValidationError as SchemaError

from common.constants import (
    COMPLETION_MESSAGE,
    DEFAULT_FINALIZE_ACTION,
    DEFAULT_INIT_ACTION,
    DRIVE_RESUMABLE_UPLOAD_URL,
)
from common.logging_config import get_logger, mask_sensitive
from common.protocol import EndpointEnvelope, FinalizeData, InitUploadData, parse_error_message
from common.types import FileMetadata, UploadSession
from uploader.credentials import AccessTokenProvider, auth_headers
from uploader.exceptions import FinalizeError, SessionInitError

logger = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class SessionInitiator(Protocol):
    """Turns file metadata into a resumable upload target."""

    async def init_session(self, metadata: FileMetadata) -> UploadSession:
        ...


class FinalizeNotifier(Protocol):
    """Marks a session complete once every byte is confirmed."""

    async def finalize(self, session_id: str) -> str:
        ...


class EndpointClient:
    """HTTP client for the hosting app's action endpoint with retry logic and error handling."""

    STATUS_MESSAGES = {
        400: 'Bad request',
        401: 'Not authenticated',
        403: 'Access forbidden',
        404: 'Endpoint not found',
        413: 'File too large',
        429: 'Upload limit reached',
        500: 'Server error',
        502: 'Bad gateway',
        503: 'Service unavailable',
    }

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint_url: str,
        max_retries: int = 3,
        backoff_multiplier: float = 2,
        timeout: float = 30,
        extra_fields: Optional[dict[str, str]] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        """
        Initialize endpoint client.

        Args:
            client: Shared async HTTP client
            endpoint_url: URL receiving the form-encoded action requests
            max_retries: Extra attempts after a 5xx answer or a network failure
            backoff_multiplier: Delay before retry n is multiplier ** n seconds
            timeout: Per-request timeout in seconds
            extra_fields: Form fields sent with every request (e.g. a nonce)
            sleep: Awaitable delay used between retries
        """
        self.client = client
        self.endpoint_url = endpoint_url
        self.max_retries = max_retries
        self.backoff_multiplier = backoff_multiplier
        self.timeout = timeout
        self.extra_fields = dict(extra_fields or {})
        self._sleep = sleep

    async def _request_with_retry(self, data: dict[str, Any]) -> httpx.Response:
        """
        POST form data, retrying on 5xx errors and network failures.

        Args:
            data: Form fields to send

        Returns:
            HTTP response object

        Raises:
            ConnectionError: If max retries exceeded or connection fails
        """
        request_id = str(uuid.uuid4())
        headers = {'X-Request-ID': request_id}
        action = data.get('action')
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.post(
                    self.endpoint_url, data=data, headers=headers, timeout=self.timeout
                )
                logger.debug(
                    f"Response received: action={action} status={response.status_code} [request_id={request_id}]"
                )

                if response.status_code >= 500 and attempt < self.max_retries:
                    delay = self.backoff_multiplier ** attempt
                    logger.warning(
                        f"Server error (attempt {attempt + 1}/{self.max_retries + 1}): action={action} "
                        f"status={response.status_code}, retrying in {delay}s [request_id={request_id}]"
                    )
                    await self._sleep(delay)
                    continue

                return response

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self.backoff_multiplier ** attempt
                    logger.warning(
                        f"Network error (attempt {attempt + 1}/{self.max_retries + 1}): action={action} "
                        f"error={type(e).__name__}, retrying in {delay}s [request_id={request_id}]"
                    )
                    await self._sleep(delay)
                    continue
                logger.error(
                    f"Network error (max retries exceeded): action={action} error={e} [request_id={request_id}]"
                )

        if isinstance(last_exception, httpx.TimeoutException):
            raise ConnectionError("Request timed out. Server may be overloaded.") from last_exception
        raise ConnectionError("Cannot connect to upload endpoint. Is it reachable?") from last_exception

    def _format_error(self, response: httpx.Response) -> str:
        """
        Map a failed HTTP answer to a user-friendly message.

        Args:
            response: HTTP response object

        Returns:
            User-friendly error message
        """
        try:
            envelope = EndpointEnvelope.model_validate(response.json())
            if envelope.message:
                return envelope.message
        except (ValueError, SchemaError):
            pass
        return self.STATUS_MESSAGES.get(response.status_code, f"Request failed (HTTP {response.status_code})")

    async def post_action(self, action: str, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Call one endpoint action and unwrap its success envelope.

        Args:
            action: Value of the 'action' form field
            fields: Remaining form fields

        Returns:
            The envelope's data dictionary

        Raises:
            ConnectionError: If the endpoint cannot be reached
            ValueError: If the endpoint reports failure, with its message
        """
        data = {**self.extra_fields, **fields, 'action': action}
        response = await self._request_with_retry(data)

        if response.status_code >= 400:
            raise ValueError(self._format_error(response))

        try:
            envelope = EndpointEnvelope.model_validate(response.json())
        except (ValueError, SchemaError) as e:
            raise ValueError(f"Unexpected response from endpoint (HTTP {response.status_code})") from e

        if not envelope.success:
            raise ValueError(envelope.message or f"Action {action} failed")

        return envelope.data


class EndpointSessionInitiator:
    """Asks the hosting app to open a resumable session on our behalf."""

    def __init__(
        self,
        endpoint: EndpointClient,
        action: str = DEFAULT_INIT_ACTION,
        form_fields: Optional[dict[str, str]] = None,
    ):
        self.endpoint = endpoint
        self.action = action
        self.form_fields = dict(form_fields or {})

    async def init_session(self, metadata: FileMetadata) -> UploadSession:
        """
        Open a resumable session for a file.

        Args:
            metadata: Declared name, size and MIME type

        Returns:
            UploadSession with the session id and upload target

        Raises:
            SessionInitError: If the endpoint fails or answers without a target
        """
        logger.info(f"Initializing upload session for {metadata.name} ({metadata.size} bytes)")
        try:
            data = await self.endpoint.post_action(self.action, {
                **self.form_fields,
                'file_name': metadata.name,
                'file_size': str(metadata.size),
                'file_type': metadata.mime_type,
            })
            init = InitUploadData.model_validate(data)
        except ConnectionError as e:
            raise SessionInitError(f"Failed to initialize upload: {e}") from e
        except SchemaError as e:
            raise SessionInitError("Failed to initialize upload: response has no upload target") from e
        except ValueError as e:
            raise SessionInitError(str(e) or "Failed to initialize upload") from e

        logger.info(f"Upload session {init.session_id} initialized -> {mask_sensitive(init.upload_uri)}")
        return UploadSession(session_id=init.session_id, upload_target=init.upload_uri)


class EndpointFinalizeNotifier:
    """Tells the hosting app a session's bytes have all landed."""

    def __init__(self, endpoint: EndpointClient, action: str = DEFAULT_FINALIZE_ACTION):
        self.endpoint = endpoint
        self.action = action

    async def finalize(self, session_id: str) -> str:
        """
        Mark a session complete.

        Args:
            session_id: Id returned by the initiator

        Returns:
            Human-readable completion message

        Raises:
            FinalizeError: If the endpoint rejects or cannot be reached
        """
        logger.info(f"Finalizing upload session {session_id}")
        try:
            data = await self.endpoint.post_action(self.action, {'session_id': session_id})
            return FinalizeData.model_validate(data).message or COMPLETION_MESSAGE
        except ConnectionError as e:
            raise FinalizeError(f"Failed to finalize upload: {e}") from e
        except ValueError as e:
            raise FinalizeError(str(e) or "Failed to finalize upload") from e


class DriveSessionInitiator:
    """Opens a resumable session directly against the Drive upload API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_provider: AccessTokenProvider,
        folder_id: Optional[str] = None,
        upload_url: str = DRIVE_RESUMABLE_UPLOAD_URL,
        timeout: float = 30,
    ):
        self.client = client
        self.token_provider = token_provider
        self.folder_id = folder_id
        self.upload_url = upload_url
        self.timeout = timeout

    def invalidate_credentials(self) -> None:
        """Drop the cached token after the server rejected it."""
        self.token_provider.invalidate()

    async def init_session(self, metadata: FileMetadata) -> UploadSession:
        """
        Create the resumable session and read its URI from the Location header.

        Args:
            metadata: Declared name, size and MIME type

        Returns:
            UploadSession with a fresh session id and the session URI

        Raises:
            SessionInitError: On auth, transport or protocol failure
        """
        body: dict[str, Any] = {'name': metadata.name, 'mimeType': metadata.mime_type}
        if self.folder_id:
            body['parents'] = [self.folder_id]

        try:
            headers = {
                **auth_headers(self.token_provider),
                'X-Upload-Content-Type': metadata.mime_type,
                'X-Upload-Content-Length': str(metadata.size),
            }
        except ValueError as e:
            raise SessionInitError(f"Failed to initiate upload: {e}") from e

        try:
            response = await self.client.post(
                self.upload_url, json=body, headers=headers, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise SessionInitError(f"Failed to initiate upload: {type(e).__name__}: {e}") from e

        if response.status_code == 401:
            self.invalidate_credentials()
            raise SessionInitError("Authentication failed. Please try again.")

        location = response.headers.get('Location')
        if response.status_code >= 400 or not location:
            message = parse_error_message(response.content, response.status_code)
            raise SessionInitError(f"Failed to get upload session URL: {message}")

        session_id = str(uuid.uuid4())
        logger.info(f"Drive resumable session {session_id} opened -> {mask_sensitive(location)}")
        return UploadSession(session_id=session_id, upload_target=location)


class LoggingFinalizeNotifier:
    """Finalizer for direct uploads: nothing to notify beyond the log."""

    def __init__(self, message: str = COMPLETION_MESSAGE):
        self.message = message
        self.finalized: list[str] = []

    async def finalize(self, session_id: str) -> str:
        self.finalized.append(session_id)
        logger.info(f"Upload session {session_id} complete")
        return self.message
