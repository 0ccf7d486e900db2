"""Resolves a WhatsApp media id and downloads the attachment.

The Graph API exposes media in two steps: ``GET /{media_id}`` returns a
short-lived download URL plus mime type and size, then the URL itself
serves the bytes. Both calls need the bearer token. Media ids expire, so a
404/400 on the first call usually means the id is gone for good.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from src.config import DEFAULT_GRAPH_API_BASE

logger = logging.getLogger(__name__)

MAX_MEDIA_BYTES = 16 * 1024 * 1024
_INFO_TIMEOUT_SECONDS = 10.0
_DOWNLOAD_TIMEOUT_SECONDS = 30.0
_FALLBACK_CONTENT_TYPE = "application/octet-stream"


class FetchError(Exception):
    """Raised when an attachment cannot be retrieved from the provider."""

    def __init__(self, media_id: str, reason: str) -> None:
        self.media_id = media_id
        self.reason = reason
        super().__init__(f"Media {media_id!r} unavailable: {reason}")


@dataclass(frozen=True)
class MediaAsset:
    """Downloaded attachment; only lives for the duration of one request."""

    media_id: str
    content: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


class MediaFetcher:
    """Downloads WhatsApp media through the Graph API."""

    def __init__(
        self,
        access_token: str,
        graph_api_base: str = DEFAULT_GRAPH_API_BASE,
        max_bytes: int = MAX_MEDIA_BYTES,
    ) -> None:
        self._access_token = access_token
        self._graph_api_base = graph_api_base.rstrip("/")
        self._max_bytes = max_bytes

    async def fetch(
        self, media_id: str, declared_type: str | None = None,
    ) -> MediaAsset:
        """Fetch the bytes and content type for ``media_id``.

        ``declared_type`` is the mime type from the webhook payload, used
        when the media info response omits one.
        """
        if not media_id:
            raise FetchError(media_id, "no media id")

        headers = {"Authorization": f"Bearer {self._access_token}"}
        logger.info("Fetching WhatsApp media %s", media_id)
        try:
            async with httpx.AsyncClient(verify=True) as client:
                info = await self._media_info(client, media_id, headers)
                content = await self._download(client, media_id, info["url"], headers)
        except httpx.TimeoutException as exc:
            raise FetchError(media_id, "timeout") from exc
        except httpx.HTTPError as exc:
            raise FetchError(media_id, f"transport error: {exc}") from exc

        content_type = info.get("mime_type") or declared_type or _FALLBACK_CONTENT_TYPE
        logger.info("Fetched media %s (%d bytes, %s)", media_id, len(content), content_type)
        return MediaAsset(media_id=media_id, content=content, content_type=content_type)

    async def _media_info(
        self, client: httpx.AsyncClient, media_id: str, headers: dict[str, str],
    ) -> dict[str, Any]:
        resp = await client.get(
            f"{self._graph_api_base}/{media_id}",
            headers=headers,
            timeout=_INFO_TIMEOUT_SECONDS,
        )
        if not resp.is_success:
            logger.warning(
                "Media info error for %s: %s %s",
                media_id, resp.status_code, resp.text[:200],
            )
            if resp.status_code in (400, 404):
                raise FetchError(media_id, "expired or not found")
            raise FetchError(media_id, f"media info error: {resp.status_code}")

        try:
            info = resp.json()
        except ValueError as exc:
            raise FetchError(media_id, "invalid media info response") from exc
        if not isinstance(info, dict) or not isinstance(info.get("url"), str) or not info["url"]:
            raise FetchError(media_id, "no download url")

        try:
            declared_size = int(info.get("file_size") or 0)
        except (TypeError, ValueError) as exc:
            raise FetchError(media_id, "invalid file size") from exc
        if declared_size > self._max_bytes:
            raise FetchError(media_id, "file too large")
        return info

    async def _download(
        self,
        client: httpx.AsyncClient,
        media_id: str,
        url: str,
        headers: dict[str, str],
    ) -> bytes:
        resp = await client.get(url, headers=headers, timeout=_DOWNLOAD_TIMEOUT_SECONDS)
        if not resp.is_success:
            logger.warning(
                "Media download error for %s: %s %s",
                media_id, resp.status_code, resp.text[:200],
            )
            raise FetchError(media_id, f"download failed: {resp.status_code}")

        content: bytes = resp.content
        if not content:
            raise FetchError(media_id, "empty file")
        if len(content) > self._max_bytes:
            raise FetchError(media_id, "file too large")
        return content
