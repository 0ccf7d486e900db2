"""Shared Pydantic data models for whatsapp-media-relay."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

# --- Enums ---


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    STICKER = "sticker"
    LOCATION = "location"
    REACTION = "reaction"
    UNKNOWN = "unknown"

    @property
    def is_media(self) -> bool:
        return self in MEDIA_KINDS

    @classmethod
    def from_provider(cls, value: str | None) -> MessageKind:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


MEDIA_KINDS = frozenset({
    MessageKind.IMAGE,
    MessageKind.DOCUMENT,
    MessageKind.AUDIO,
    MessageKind.VIDEO,
    MessageKind.STICKER,
})


class AuditEventType(str, Enum):
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_REJECTED = "webhook_rejected"
    MEDIA_RELAYED = "media_relayed"
    MEDIA_RELAY_FAILED = "media_relay_failed"
    PERSISTENCE_FAILURE = "persistence_failure"
    MEDIA_RETRY = "media_retry"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# --- Storage Models ---


class StorageReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket: str
    path: str
    content_type: str
    public_url: str | None = None


# --- Message Models ---


class MediaMetadata(BaseModel):
    """Metadata stored alongside a message row.

    ``original_media_id`` is the provider handle needed to re-download an
    attachment; it is kept even after ``storage_path`` is filled in.
    """

    model_config = ConfigDict(frozen=True)

    original_media_id: str | None = None
    storage_path: str | None = None
    content_type: str | None = None
    public_url: str | None = None
    media_error: str | None = None

    def with_storage(self, reference: StorageReference) -> MediaMetadata:
        return self.model_copy(update={
            "storage_path": reference.path,
            "content_type": reference.content_type,
            "public_url": reference.public_url,
            "media_error": None,
        })

    def with_error(self, error: str) -> MediaMetadata:
        return self.model_copy(update={"media_error": error})

    def as_json(self) -> dict[str, str]:
        return self.model_dump(exclude_none=True)


class InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_message_id: str = Field(min_length=1)
    organization_id: str
    channel_id: str | None = None
    sender_id: str
    sender_name: str | None = None
    kind: MessageKind
    body: str | None = None
    sent_at: str = Field(default_factory=_now_iso)  # ISO8601
    metadata: MediaMetadata = Field(default_factory=MediaMetadata)

    @model_validator(mode="after")
    def _media_is_recoverable(self) -> InboundMessage:
        meta = self.metadata
        if self.kind.is_media and not (meta.storage_path or meta.original_media_id):
            raise ValueError(
                f"{self.kind.value} message {self.provider_message_id} has neither "
                "storage_path nor original_media_id",
            )
        return self

    @property
    def needs_media(self) -> bool:
        """True for media messages whose attachment has not been stored yet."""
        return self.kind.is_media and self.metadata.storage_path is None

    def with_storage(self, reference: StorageReference) -> InboundMessage:
        return self.model_copy(update={"metadata": self.metadata.with_storage(reference)})

    def with_media_error(self, error: str) -> InboundMessage:
        return self.model_copy(update={"metadata": self.metadata.with_error(error)})


class StatusUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_message_id: str
    status: str  # "sent" | "delivered" | "read" | "failed"
    timestamp: str  # ISO8601


# --- Audit Models ---


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    action: str
    result: str  # "success" | "failure" | "degraded"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
