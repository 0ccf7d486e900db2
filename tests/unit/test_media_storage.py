"""Tests for Supabase Storage uploads and object key layout."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from supabase import StorageException

from src.media.storage import StorageError, SupabaseMediaStorage, file_extension, storage_key
from src.models import MessageKind


class TestStorageKey:
    def test_image_key(self) -> None:
        assert storage_key("org1", "msg42", MessageKind.IMAGE, "image/jpeg") == (
            "org1/images/msg42.jpg"
        )

    def test_unsafe_characters_replaced(self) -> None:
        key = storage_key("org1", "wamid.HBg/LN+Z==", MessageKind.DOCUMENT, "application/pdf")
        assert key == "org1/documents/wamid.HBg_LN_Z==.pdf"

    def test_same_inputs_same_key(self) -> None:
        first = storage_key("org1", "msg42", MessageKind.AUDIO, "audio/ogg")
        assert storage_key("org1", "msg42", MessageKind.AUDIO, "audio/ogg") == first

    def test_unknown_kind_goes_to_misc(self) -> None:
        assert storage_key("org1", "m", MessageKind.UNKNOWN, None) == "org1/misc/m.bin"


class TestFileExtension:
    def test_mime_parameters_ignored(self) -> None:
        assert file_extension("audio/ogg; codecs=opus", MessageKind.AUDIO) == "ogg"

    def test_kind_fallback(self) -> None:
        assert file_extension("application/octet-stream", MessageKind.STICKER) == "webp"
        assert file_extension(None, MessageKind.VIDEO) == "mp4"

    def test_document_without_known_mime(self) -> None:
        assert file_extension("application/zip", MessageKind.DOCUMENT) == "bin"


def _make_client() -> tuple[MagicMock, MagicMock]:
    client = MagicMock()
    bucket = client.storage.from_.return_value
    bucket.get_public_url.return_value = "https://cdn.test/messaging-media/org1/images/msg42.jpg"
    return client, bucket


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_returns_reference(self) -> None:
        client, bucket = _make_client()
        storage = SupabaseMediaStorage(client, bucket="messaging-media")

        ref = await storage.upload(b"bytes", "image/jpeg", "org1/images/msg42.jpg")

        client.storage.from_.assert_called_with("messaging-media")
        key, content = bucket.upload.call_args.args
        assert key == "org1/images/msg42.jpg"
        assert content == b"bytes"
        options = bucket.upload.call_args.kwargs["file_options"]
        assert options["content-type"] == "image/jpeg"
        assert options["upsert"] == "true"
        assert ref.bucket == "messaging-media"
        assert ref.path == "org1/images/msg42.jpg"
        assert ref.content_type == "image/jpeg"
        assert ref.public_url.endswith("org1/images/msg42.jpg")

    @pytest.mark.asyncio
    async def test_retries_once_then_succeeds(self) -> None:
        client, bucket = _make_client()
        bucket.upload.side_effect = [StorageException("busy"), None]
        storage = SupabaseMediaStorage(client)

        with patch("src.media.storage.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            ref = await storage.upload(b"bytes", "image/jpeg", "k.jpg")

        assert bucket.upload.call_count == 2
        mock_sleep.assert_awaited_once_with(1.0)
        assert ref.path == "k.jpg"

    @pytest.mark.asyncio
    async def test_raises_after_second_failure(self) -> None:
        client, bucket = _make_client()
        bucket.upload.side_effect = StorageException("bucket not found")
        storage = SupabaseMediaStorage(client)

        with patch("src.media.storage.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(StorageError) as exc_info:
                await storage.upload(b"bytes", "image/jpeg", "k.jpg")

        assert bucket.upload.call_count == 2
        assert exc_info.value.key == "k.jpg"
        assert "bucket not found" in exc_info.value.reason
        bucket.get_public_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self) -> None:
        client, bucket = _make_client()
        bucket.upload.side_effect = RuntimeError("bug")
        storage = SupabaseMediaStorage(client)

        with pytest.raises(RuntimeError):
            await storage.upload(b"bytes", "image/jpeg", "k.jpg")
        assert bucket.upload.call_count == 1
