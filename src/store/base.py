"""Message store interface and the row layout shared by its backends.

Rows are keyed by the provider message id (``external_message_id``). The
provider delivers webhooks at least once, so ``save`` must be an
insert-or-ignore: a redelivery never produces a second row.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

from src.models import InboundMessage, MediaMetadata, MessageKind, StatusUpdate, StorageReference

CHANNEL_TYPE = "whatsapp"

# Status value -> timestamp column it stamps
STATUS_COLUMNS = {"delivered": "delivered_at", "read": "read_at"}


class PersistenceError(Exception):
    """Raised when the message store cannot be read or written."""


class MessageStore(Protocol):
    def save(self, message: InboundMessage) -> bool:
        """Insert ``message`` unless its id exists. Returns True if a row was written."""
        ...

    def get(self, provider_message_id: str) -> InboundMessage | None: ...

    def attach_media(self, provider_message_id: str, reference: StorageReference) -> None: ...

    def mark_failed(self, provider_message_id: str, error: str) -> None: ...

    def mark_status(self, update: StatusUpdate) -> bool: ...

    def pending_media(self, limit: int = 50) -> list[InboundMessage]: ...

    def find_channel_organization(self, phone_number_id: str) -> str | None: ...


def message_to_row(message: InboundMessage) -> dict[str, Any]:
    meta = message.metadata
    return {
        "external_message_id": message.provider_message_id,
        "organization_id": message.organization_id,
        "channel_id": message.channel_id,
        "channel_type": CHANNEL_TYPE,
        "direction": "inbound",
        "sender_type": "user",
        "external_user_id": message.sender_id,
        "user_name": message.sender_name,
        "message_type": message.kind.value,
        "content": message.body,
        "media_url": meta.public_url,
        "media_mime_type": meta.content_type,
        "metadata": meta.as_json(),
        "sent_at": message.sent_at,
    }


def row_to_message(row: dict[str, Any]) -> InboundMessage:
    raw_meta = row.get("metadata") or {}
    if isinstance(raw_meta, str):
        raw_meta = json.loads(raw_meta)
    known = {k: v for k, v in raw_meta.items() if k in MediaMetadata.model_fields}
    return InboundMessage(
        provider_message_id=row["external_message_id"],
        organization_id=row["organization_id"],
        channel_id=row.get("channel_id"),
        sender_id=row["external_user_id"],
        sender_name=row.get("user_name"),
        kind=MessageKind.from_provider(row["message_type"]),
        body=row.get("content"),
        sent_at=row["sent_at"],
        metadata=MediaMetadata(**known),
    )
