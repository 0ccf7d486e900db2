"""Media relay pipeline for inbound WhatsApp messages.

Per message, strictly in order:
1. Resolve the organization from the receiving phone number
2. Skip redeliveries whose media is already stored
3. Fetch the attachment from the provider (media kinds only)
4. Upload it to storage under a deterministic key
5. Persist the message row, keyed by the provider message id

Steps 3-4 may fail; the row is still written with ``original_media_id``
in its metadata so the attachment can be recovered later. Only a store
failure aborts the delivery, and the provider then redelivers it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from src.media.fetcher import FetchError, MediaFetcher
from src.media.storage import StorageError, SupabaseMediaStorage, storage_key
from src.models import (
    AuditEvent,
    AuditEventType,
    InboundMessage,
    MediaMetadata,
    RiskLevel,
    StorageReference,
)
from src.store.base import STATUS_COLUMNS, MessageStore, PersistenceError
from src.webhook.models import ParsedMessage, RelaySummary, WebhookBatch

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


async def relay_media(
    fetcher: MediaFetcher,
    storage: SupabaseMediaStorage,
    message: InboundMessage,
    declared_type: str | None = None,
) -> StorageReference:
    """Copy a message's attachment from the provider into storage.

    Raises FetchError or StorageError.
    """
    media_id = message.metadata.original_media_id or ""
    asset = await fetcher.fetch(media_id, declared_type)
    key = storage_key(
        message.organization_id,
        message.provider_message_id,
        message.kind,
        asset.content_type,
    )
    return await storage.upload(asset.content, asset.content_type, key)


class MediaRelayPipeline:
    """Runs one webhook delivery through fetch, upload and persistence."""

    def __init__(
        self,
        fetcher: MediaFetcher,
        storage: SupabaseMediaStorage,
        store: MessageStore,
        default_organization_id: str,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._storage = storage
        self._store = store
        self._default_organization_id = default_organization_id
        self._audit = audit_logger

    async def dispatch(self, batch: WebhookBatch) -> RelaySummary:
        """Process every message and status update in a delivery.

        PersistenceError from a message propagates to the caller; status
        updates are best effort.
        """
        summary = RelaySummary()
        organizations: dict[str | None, str] = {}
        for parsed in batch.messages:
            summary.received += 1
            if parsed.channel_id not in organizations:
                organizations[parsed.channel_id] = await self._resolve_organization(
                    parsed.channel_id,
                )
            await self._process(parsed, organizations[parsed.channel_id], summary)

        for update in batch.statuses:
            if update.status not in STATUS_COLUMNS:
                logger.debug(
                    "Untracked status %s for %s ignored",
                    update.status, update.provider_message_id,
                )
                continue
            try:
                applied = await asyncio.to_thread(self._store.mark_status, update)
            except PersistenceError as exc:
                logger.warning(
                    "Status %s for %s not recorded: %s",
                    update.status, update.provider_message_id, exc,
                )
                continue
            if applied:
                summary.statuses += 1
            else:
                logger.debug(
                    "Status %s for unknown message %s ignored",
                    update.status, update.provider_message_id,
                )
        return summary

    async def _resolve_organization(self, channel_id: str | None) -> str:
        if channel_id:
            organization_id = await asyncio.to_thread(
                self._store.find_channel_organization, channel_id,
            )
            if organization_id:
                return organization_id
        logger.info(
            "Using default organization for channel %s", channel_id,
        )
        return self._default_organization_id

    async def _process(
        self, parsed: ParsedMessage, organization_id: str, summary: RelaySummary,
    ) -> InboundMessage:
        message = InboundMessage(
            provider_message_id=parsed.provider_message_id,
            organization_id=organization_id,
            channel_id=parsed.channel_id,
            sender_id=parsed.sender_id,
            sender_name=parsed.sender_name,
            kind=parsed.kind,
            body=parsed.body,
            sent_at=parsed.sent_at,
            metadata=MediaMetadata(
                original_media_id=parsed.media_id,
                content_type=parsed.declared_content_type,
            ),
        )

        existing = await asyncio.to_thread(self._store.get, message.provider_message_id)
        if existing is not None and not existing.needs_media:
            logger.info("Duplicate delivery of %s ignored", message.provider_message_id)
            summary.duplicates += 1
            return existing
        if existing is not None:
            # Redelivery of a message whose media never made it: relay again
            message = existing

        reference: StorageReference | None = None
        if message.kind.is_media:
            reference, error = await self._relay(message, parsed.declared_content_type, summary)
            if reference is not None:
                message = message.with_storage(reference)
            else:
                message = message.with_media_error(error or "relay failed")
                summary.media_failed += 1

        if existing is None:
            created = await asyncio.to_thread(self._store.save, message)
            if created:
                summary.stored += 1
                return message
            # A concurrent delivery inserted the row first
            summary.duplicates += 1
            if reference is None:
                return message
        else:
            summary.duplicates += 1

        if reference is not None:
            await asyncio.to_thread(
                self._store.attach_media, message.provider_message_id, reference,
            )
        elif message.metadata.media_error:
            await asyncio.to_thread(
                self._store.mark_failed,
                message.provider_message_id,
                message.metadata.media_error,
            )
        return message

    async def _relay(
        self,
        message: InboundMessage,
        declared_type: str | None,
        summary: RelaySummary,
    ) -> tuple[StorageReference | None, str | None]:
        """Fetch and upload; on failure return the error instead of a reference."""
        try:
            reference = await relay_media(self._fetcher, self._storage, message, declared_type)
        except FetchError as exc:
            return None, self._record_failure(message, "fetch", exc.reason)
        except StorageError as exc:
            return None, self._record_failure(message, "upload", exc.reason)
        except Exception as exc:  # any other failure still persists the media id
            logger.exception("Unexpected error relaying media for %s", message.provider_message_id)
            return None, self._record_failure(message, "relay", str(exc))

        summary.media_relayed += 1
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.MEDIA_RELAYED,
                action="relay_media",
                result="success",
                risk_level=RiskLevel.INFO,
                details={
                    "message_id": message.provider_message_id,
                    "organization_id": message.organization_id,
                    "storage_path": reference.path,
                },
            ))
        return reference, None

    def _record_failure(self, message: InboundMessage, stage: str, reason: str) -> str:
        logger.warning(
            "Media %s failed for %s (%s); keeping original media id %s",
            stage, message.provider_message_id, reason, message.metadata.original_media_id,
        )
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.MEDIA_RELAY_FAILED,
                action=f"relay_media_{stage}",
                result="degraded",
                risk_level=RiskLevel.MEDIUM,
                details={
                    "message_id": message.provider_message_id,
                    "original_media_id": message.metadata.original_media_id,
                    "reason": reason,
                },
            ))
        return f"{stage}: {reason}"
