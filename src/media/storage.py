"""Writes relayed media into Supabase Storage."""

from __future__ import annotations

import asyncio
import logging
import re

import httpx
from supabase import Client, StorageException

from src.config import DEFAULT_MEDIA_BUCKET
from src.models import MessageKind, StorageReference

logger = logging.getLogger(__name__)

_UPLOAD_ATTEMPTS = 2
_RETRY_PAUSE_SECONDS = 1.0
_CACHE_CONTROL = "31536000"

_MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "mp4",
    "audio/amr": "amr",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "application/pdf": "pdf",
}

_KIND_EXTENSIONS = {
    MessageKind.IMAGE: "jpg",
    MessageKind.AUDIO: "ogg",
    MessageKind.VIDEO: "mp4",
    MessageKind.STICKER: "webp",
}

_KIND_FOLDERS = {
    MessageKind.IMAGE: "images",
    MessageKind.AUDIO: "audios",
    MessageKind.VIDEO: "videos",
    MessageKind.STICKER: "stickers",
    MessageKind.DOCUMENT: "documents",
}

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._=-]")


class StorageError(Exception):
    """Raised when an object cannot be written to storage."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Upload of {key!r} failed: {reason}")


def file_extension(content_type: str | None, kind: MessageKind) -> str:
    """Pick a file extension from the mime type, then the message kind."""
    if content_type:
        # "audio/ogg; codecs=opus" -> "audio/ogg"
        base = content_type.split(";", 1)[0].strip().lower()
        if base in _MIME_EXTENSIONS:
            return _MIME_EXTENSIONS[base]
    return _KIND_EXTENSIONS.get(kind, "bin")


def storage_key(
    organization_id: str,
    provider_message_id: str,
    kind: MessageKind,
    content_type: str | None,
) -> str:
    """Deterministic object key, so a retried upload overwrites the same object."""
    folder = _KIND_FOLDERS.get(kind, "misc")
    name = _UNSAFE_KEY_CHARS.sub("_", provider_message_id)
    return f"{organization_id}/{folder}/{name}.{file_extension(content_type, kind)}"


class SupabaseMediaStorage:
    """Uploads media objects to a Supabase Storage bucket."""

    def __init__(self, client: Client, bucket: str = DEFAULT_MEDIA_BUCKET) -> None:
        self._client = client
        self._bucket = bucket

    async def upload(
        self, content: bytes, content_type: str, key: str,
    ) -> StorageReference:
        """Write ``content`` under ``key``, replacing any existing object."""
        last_error: Exception | None = None
        for attempt in range(_UPLOAD_ATTEMPTS):
            try:
                await asyncio.to_thread(self._put, content, content_type, key)
                break
            except (StorageException, httpx.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "Upload of %s to %s failed (attempt %d): %s",
                    key, self._bucket, attempt + 1, exc,
                )
                if attempt < _UPLOAD_ATTEMPTS - 1:
                    await asyncio.sleep(_RETRY_PAUSE_SECONDS)
        else:
            raise StorageError(key, str(last_error)) from last_error

        public_url = self._client.storage.from_(self._bucket).get_public_url(key)
        logger.info("Stored media at %s/%s", self._bucket, key)
        return StorageReference(
            bucket=self._bucket,
            path=key,
            content_type=content_type,
            public_url=public_url or None,
        )

    def _put(self, content: bytes, content_type: str, key: str) -> None:
        self._client.storage.from_(self._bucket).upload(
            key,
            content,
            file_options={
                "content-type": content_type,
                "cache-control": _CACHE_CONTROL,
                "upsert": "true",
            },
        )
