"""Data models for the webhook relay pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from src.models import MessageKind, StatusUpdate


@dataclass(frozen=True)
class ParsedMessage:
    """One message extracted from a WhatsApp webhook delivery."""

    provider_message_id: str
    channel_id: str | None  # Meta phone_number_id the message was sent to
    sender_id: str
    kind: MessageKind
    body: str | None
    sent_at: str  # ISO8601
    sender_name: str | None = None
    media_id: str | None = None
    declared_content_type: str | None = None


@dataclass
class WebhookBatch:
    """Everything one webhook POST carried."""

    messages: list[ParsedMessage] = field(default_factory=list)
    statuses: list[StatusUpdate] = field(default_factory=list)


@dataclass
class RelaySummary:
    """Counters returned to the provider in the webhook response body."""

    received: int = 0
    stored: int = 0
    duplicates: int = 0
    media_relayed: int = 0
    media_failed: int = 0
    statuses: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)
