"""Shared test fixtures for whatsapp-media-relay."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.audit.logger import AuditLogger
from src.media.fetcher import MediaAsset, MediaFetcher
from src.media.storage import SupabaseMediaStorage
from src.models import InboundMessage, MediaMetadata, MessageKind, StorageReference
from src.store.sqlite import SQLiteMessageStore


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def sqlite_store(tmp_path: Path):
    store = SQLiteMessageStore(str(tmp_path / "messages.db"))
    yield store
    store.close()


@pytest.fixture
def mock_fetcher() -> MagicMock:
    fetcher = MagicMock(spec=MediaFetcher)
    fetcher.fetch = AsyncMock(return_value=make_asset())
    return fetcher


@pytest.fixture
def mock_storage() -> MagicMock:
    storage = MagicMock(spec=SupabaseMediaStorage)

    async def _upload(content: bytes, content_type: str, key: str) -> StorageReference:
        return make_reference(path=key, content_type=content_type)

    storage.upload = AsyncMock(side_effect=_upload)
    return storage


# --- Factory functions for test data ---

DEFAULT_ORG = "org-default"

REQUIRED_ENV = {
    "SUPABASE_URL": "https://project.supabase.co",
    "SUPABASE_SERVICE_ROLE_KEY": "service-key",
    "META_WHATSAPP_TOKEN": "meta-token",
    "META_WEBHOOK_VERIFY_TOKEN": "verify-me",
    "DEFAULT_ORGANIZATION_ID": DEFAULT_ORG,
}


def make_asset(**kwargs: Any) -> MediaAsset:
    defaults: dict[str, Any] = {
        "media_id": "M1",
        "content": b"\xff\xd8\xff fake jpeg",
        "content_type": "image/jpeg",
    }
    defaults.update(kwargs)
    return MediaAsset(**defaults)


def make_reference(**kwargs: Any) -> StorageReference:
    defaults: dict[str, Any] = {
        "bucket": "messaging-media",
        "path": "org1/images/msg42.jpg",
        "content_type": "image/jpeg",
    }
    defaults.update(kwargs)
    if "public_url" not in defaults:
        defaults["public_url"] = f"https://cdn.test/{defaults['path']}"
    return StorageReference(**defaults)


def make_message(**kwargs: Any) -> InboundMessage:
    """Factory for InboundMessage with sensible defaults (an image awaiting upload)."""
    defaults: dict[str, Any] = {
        "provider_message_id": "wamid.1",
        "organization_id": "org1",
        "channel_id": "PID",
        "sender_id": "573001112233",
        "kind": MessageKind.IMAGE,
        "body": "[image]",
        "sent_at": "2026-01-01T00:00:00+00:00",
        "metadata": MediaMetadata(original_media_id="M1", content_type="image/jpeg"),
    }
    defaults.update(kwargs)
    return InboundMessage(**defaults)


def make_whatsapp_message(
    msg_type: str = "text",
    message_id: str = "wamid.1",
    sender: str = "573001112233",
    **content: Any,
) -> dict[str, Any]:
    msg: dict[str, Any] = {
        "from": sender,
        "id": message_id,
        "timestamp": "1767225600",
        "type": msg_type,
    }
    if msg_type == "text":
        msg["text"] = {"body": content.get("body", "hola")}
    else:
        msg[msg_type] = content
    return msg


def make_whatsapp_payload(
    messages: list[dict[str, Any]] | None = None,
    statuses: list[dict[str, Any]] | None = None,
    phone_number_id: str = "PID",
) -> dict[str, Any]:
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"phone_number_id": phone_number_id},
        "contacts": [{"wa_id": "573001112233", "profile": {"name": "Ana"}}],
    }
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "BUSINESS_ID",
                "changes": [{"value": value, "field": "messages"}],
            }
        ],
    }
