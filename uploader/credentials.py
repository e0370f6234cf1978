"""Access token contract used for authenticated resumable requests."""

from typing import Optional, Protocol

from common.logging_config import get_logger

logger = get_logger(__name__)


class AccessTokenProvider(Protocol):
    """Source of bearer tokens; acquiring them is the caller's business."""

    def get_token(self) -> str:
        ...

    def invalidate(self) -> None:
        ...


class StaticTokenProvider:
    """Wraps a pre-issued token. Once invalidated it is no longer handed out."""

    def __init__(self, token: str):
        self._token: Optional[str] = token

    def get_token(self) -> str:
        if not self._token:
            raise ValueError("Access token is missing or was invalidated")
        return self._token

    def invalidate(self) -> None:
        logger.info("Invalidating cached access token")
        self._token = None


def auth_headers(provider: Optional[AccessTokenProvider]) -> dict[str, str]:
    """
    Build the Authorization header for a request.

    Args:
        provider: Token provider, or None for capability-only upload URIs

    Returns:
        Dictionary with the Authorization header, or an empty dictionary
    """
    if provider is None:
        return {}
    return {'Authorization': f'Bearer {provider.get_token()}'}
