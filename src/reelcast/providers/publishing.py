"""Publish platform interface and the Instagram Graph API client.

Publishing a reel is a three-step protocol:
1. POST /me/media creates a container referencing the video URL
2. GET /{container_id}?fields=status_code until FINISHED (or ERROR)
3. POST /me/media_publish turns the container into a post
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..errors import ReelcastError, TerminalProviderError
from ..models import MediaStatus, PublishReceipt
from .base import HTTPProviderClient

logger = logging.getLogger(__name__)


class PublishPlatform(ABC):
    """Remote social platform bound to one account's credentials."""

    @abstractmethod
    def create_media(self, artifact_url: str, caption: str) -> str:
        """Create a media container and return its id."""

    @abstractmethod
    def get_processing_status(self, media_id: str) -> MediaStatus:
        """Processing status of a container.

        Raises:
            PollTimeout: If this single status request timed out
        """

    @abstractmethod
    def publish(self, media_id: str) -> PublishReceipt:
        """Publish a finished container."""

    def close(self) -> None:
        """Release connections held by the client."""


_STATUS_CODES = {
    "FINISHED": MediaStatus.FINISHED,
    "PUBLISHED": MediaStatus.FINISHED,
    "IN_PROGRESS": MediaStatus.IN_PROGRESS,
    "ERROR": MediaStatus.ERROR,
    "EXPIRED": MediaStatus.ERROR,
}


class InstagramGraphClient(HTTPProviderClient, PublishPlatform):
    """Instagram Graph API client for reels."""

    provider_name = "instagram"

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://graph.facebook.com/v18.0",
        timeout_s: float = 30.0,
        poll_timeout_s: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(base_url, timeout_s=timeout_s, transport=transport)
        self._access_token = access_token
        self.poll_timeout_s = poll_timeout_s

    def create_media(self, artifact_url: str, caption: str) -> str:
        data = self._request(
            "POST",
            "/me/media",
            data={
                "media_type": "REELS",
                "video_url": artifact_url,
                "caption": caption,
                "access_token": self._access_token,
            },
        )
        media_id = data.get("id")
        if not media_id:
            raise TerminalProviderError("instagram: media container response has no id")
        logger.info("Instagram media container %s created", media_id)
        return media_id

    def get_processing_status(self, media_id: str) -> MediaStatus:
        data = self._request(
            "GET",
            f"/{media_id}",
            params={"fields": "status_code", "access_token": self._access_token},
            timeout_s=self.poll_timeout_s,
            poll=True,
        )
        return _STATUS_CODES.get(str(data.get("status_code", "")).upper(), MediaStatus.UNKNOWN)

    def publish(self, media_id: str) -> PublishReceipt:
        data = self._request(
            "POST",
            "/me/media_publish",
            data={"creation_id": media_id, "access_token": self._access_token},
        )
        publish_id = data.get("id")
        if not publish_id:
            raise TerminalProviderError("instagram: media_publish response has no id")

        permalink = data.get("permalink")
        if not permalink:
            permalink = self._fetch_permalink(publish_id)
        return PublishReceipt(publish_id=publish_id, permalink=permalink)

    def validate_access_token(self) -> Dict[str, Any]:
        """Return the account behind the token (``{"id", "username"}``).

        Raises:
            TerminalProviderError: If the token is rejected
        """
        return self._request(
            "GET",
            "/me",
            params={"fields": "id,username", "access_token": self._access_token},
        )

    def _fetch_permalink(self, publish_id: str) -> Optional[str]:
        """Permalink lookup after publish; the post exists either way."""
        try:
            data = self._request(
                "GET",
                f"/{publish_id}",
                params={"fields": "permalink", "access_token": self._access_token},
            )
        except ReelcastError as e:
            logger.warning("Could not fetch permalink for %s: %s", publish_id, e)
            return None
        return data.get("permalink")
