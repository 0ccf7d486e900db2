"""Supabase (PostgREST) message store used in production."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from supabase import Client, PostgrestAPIError

from src.models import InboundMessage, StatusUpdate, StorageReference
from src.store.base import (
    CHANNEL_TYPE,
    STATUS_COLUMNS,
    PersistenceError,
    message_to_row,
    row_to_message,
)

logger = logging.getLogger(__name__)

_DB_ERRORS = (PostgrestAPIError, httpx.HTTPError)


class SupabaseMessageStore:
    """Message rows in ``messaging_messages``, channels in ``messaging_channels``.

    Requires a unique constraint on ``messaging_messages.external_message_id``.
    """

    def __init__(
        self,
        client: Client,
        messages_table: str = "messaging_messages",
        channels_table: str = "messaging_channels",
    ) -> None:
        self._client = client
        self._messages_table = messages_table
        self._channels_table = channels_table

    def _messages(self) -> Any:
        return self._client.table(self._messages_table)

    def save(self, message: InboundMessage) -> bool:
        try:
            resp = self._messages().upsert(
                message_to_row(message),
                on_conflict="external_message_id",
                ignore_duplicates=True,
            ).execute()
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Insert of {message.provider_message_id} failed: {exc}") from exc
        # With ignore_duplicates only newly inserted rows come back
        return bool(resp.data)

    def get(self, provider_message_id: str) -> InboundMessage | None:
        try:
            resp = (
                self._messages()
                .select("*")
                .eq("external_message_id", provider_message_id)
                .limit(1)
                .execute()
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Lookup of {provider_message_id} failed: {exc}") from exc
        return row_to_message(resp.data[0]) if resp.data else None

    def _update(self, provider_message_id: str, values: dict[str, Any]) -> int:
        try:
            resp = (
                self._messages()
                .update(values)
                .eq("external_message_id", provider_message_id)
                .execute()
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Update of {provider_message_id} failed: {exc}") from exc
        return len(resp.data or [])

    def attach_media(self, provider_message_id: str, reference: StorageReference) -> None:
        current = self.get(provider_message_id)
        if current is None:
            raise PersistenceError(f"Message {provider_message_id} not found")
        metadata = current.metadata.with_storage(reference)
        self._update(provider_message_id, {
            "media_url": reference.public_url,
            "media_mime_type": reference.content_type,
            "metadata": metadata.as_json(),
        })

    def mark_failed(self, provider_message_id: str, error: str) -> None:
        current = self.get(provider_message_id)
        if current is None:
            raise PersistenceError(f"Message {provider_message_id} not found")
        self._update(provider_message_id, {"metadata": current.metadata.with_error(error).as_json()})

    def mark_status(self, update: StatusUpdate) -> bool:
        column = STATUS_COLUMNS.get(update.status)
        if column is None:
            return False
        return self._update(update.provider_message_id, {column: update.timestamp}) > 0

    def pending_media(self, limit: int = 50) -> list[InboundMessage]:
        try:
            resp = (
                self._messages()
                .select("*")
                .eq("channel_type", CHANNEL_TYPE)
                .filter("metadata->>original_media_id", "not.is", "null")
                .filter("metadata->>storage_path", "is", "null")
                .order("sent_at")
                .limit(limit)
                .execute()
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Pending media query failed: {exc}") from exc
        return [row_to_message(row) for row in resp.data or []]

    def find_channel_organization(self, phone_number_id: str) -> str | None:
        try:
            resp = (
                self._client.table(self._channels_table)
                .select("organization_id")
                .eq("meta_phone_number_id", phone_number_id)
                .eq("channel_type", CHANNEL_TYPE)
                .limit(1)
                .execute()
            )
        except _DB_ERRORS as exc:
            raise PersistenceError(f"Channel lookup for {phone_number_id} failed: {exc}") from exc
        if not resp.data:
            logger.info("No channel registered for phone number id %s", phone_number_id)
            return None
        return resp.data[0]["organization_id"]
