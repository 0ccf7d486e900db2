"""Out-of-band recovery of media that could not be relayed at webhook time.

Rows keep ``original_media_id`` in their metadata until the attachment is
stored; this service re-reads it, fetches and uploads again to the same
deterministic key, and attaches the result to the row.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from src.media.fetcher import FetchError, MediaFetcher
from src.media.storage import StorageError, SupabaseMediaStorage
from src.models import AuditEvent, AuditEventType, RiskLevel
from src.webhook.relay import relay_media

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.store.base import MessageStore

logger = logging.getLogger(__name__)


class RetryOutcome(str, Enum):
    STORED = "stored"
    ALREADY_STORED = "already_stored"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    NOT_MEDIA = "not_media"


@dataclass
class RetryResult:
    message_id: str
    outcome: RetryOutcome
    storage_path: str | None = None
    public_url: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return {
            "message_id": self.message_id,
            "outcome": self.outcome.value,
            "storage_path": self.storage_path,
            "public_url": self.public_url,
            "error": self.error,
        }


class MediaRetryService:
    def __init__(
        self,
        fetcher: MediaFetcher,
        storage: SupabaseMediaStorage,
        store: MessageStore,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._storage = storage
        self._store = store
        self._audit = audit_logger

    async def retry(self, provider_message_id: str) -> RetryResult:
        """Re-relay the attachment of one stored message."""
        message = await asyncio.to_thread(self._store.get, provider_message_id)
        if message is None:
            return RetryResult(provider_message_id, RetryOutcome.NOT_FOUND)
        if message.metadata.storage_path:
            return RetryResult(
                provider_message_id,
                RetryOutcome.ALREADY_STORED,
                storage_path=message.metadata.storage_path,
                public_url=message.metadata.public_url,
            )
        if not message.kind.is_media or not message.metadata.original_media_id:
            return RetryResult(
                provider_message_id,
                RetryOutcome.NOT_MEDIA,
                error="No original_media_id to retry",
            )

        try:
            reference = await relay_media(
                self._fetcher, self._storage, message, message.metadata.content_type,
            )
        except (FetchError, StorageError) as exc:
            error = exc.reason
            logger.warning("Media retry for %s failed: %s", provider_message_id, error)
            return await self._fail(provider_message_id, error)
        except Exception as exc:  # recorded on the row like any relay failure
            logger.exception("Unexpected error retrying media for %s", provider_message_id)
            return await self._fail(provider_message_id, str(exc))

        await asyncio.to_thread(self._store.attach_media, provider_message_id, reference)
        logger.info("Media retry for %s stored at %s", provider_message_id, reference.path)
        self._log(provider_message_id, "success", {"storage_path": reference.path})
        return RetryResult(
            provider_message_id,
            RetryOutcome.STORED,
            storage_path=reference.path,
            public_url=reference.public_url,
        )

    async def retry_pending(self, limit: int = 50) -> list[RetryResult]:
        """Retry every row still waiting for its attachment, oldest first."""
        pending = await asyncio.to_thread(self._store.pending_media, limit)
        results = []
        for message in pending:
            results.append(await self.retry(message.provider_message_id))
        return results

    async def _fail(self, provider_message_id: str, error: str) -> RetryResult:
        await asyncio.to_thread(self._store.mark_failed, provider_message_id, error)
        self._log(provider_message_id, "failure", {"reason": error})
        return RetryResult(provider_message_id, RetryOutcome.FAILED, error=error)

    def _log(self, message_id: str, result: str, details: dict[str, object]) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.MEDIA_RETRY,
                action="retry_media",
                result=result,
                risk_level=RiskLevel.INFO if result == "success" else RiskLevel.MEDIUM,
                details={"message_id": message_id, **details},
            ))
