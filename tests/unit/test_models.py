"""Tests for shared Pydantic data models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.models import (
    AuditEvent,
    AuditEventType,
    InboundMessage,
    MediaMetadata,
    MessageKind,
    RiskLevel,
)
from tests.conftest import make_message, make_reference


class TestMessageKind:
    def test_media_kinds(self):
        assert MessageKind.IMAGE.is_media
        assert MessageKind.STICKER.is_media
        assert not MessageKind.TEXT.is_media
        assert not MessageKind.LOCATION.is_media

    def test_unknown_provider_type_maps_to_unknown(self):
        assert MessageKind.from_provider("interactive") is MessageKind.UNKNOWN
        assert MessageKind.from_provider(None) is MessageKind.UNKNOWN
        assert MessageKind.from_provider("audio") is MessageKind.AUDIO


class TestInboundMessage:
    def test_media_message_requires_media_id_or_storage_path(self):
        with pytest.raises(ValidationError):
            make_message(metadata=MediaMetadata())

    def test_media_message_with_only_storage_path_is_valid(self):
        msg = make_message(metadata=MediaMetadata(storage_path="org1/images/a.jpg"))
        assert not msg.needs_media

    def test_text_message_needs_no_media(self):
        msg = make_message(kind=MessageKind.TEXT, body="hola", metadata=MediaMetadata())
        assert not msg.needs_media

    def test_empty_provider_id_rejected(self):
        with pytest.raises(ValidationError):
            make_message(provider_message_id="")

    def test_with_storage_keeps_original_media_id(self):
        msg = make_message().with_media_error("fetch: timeout")
        stored = msg.with_storage(make_reference(path="org1/msg42"))
        assert stored.metadata.storage_path == "org1/msg42"
        assert stored.metadata.original_media_id == "M1"
        assert stored.metadata.media_error is None
        assert not stored.needs_media

    def test_frozen(self):
        msg = make_message()
        with pytest.raises(ValidationError):
            msg.body = "changed"  # type: ignore[misc]


class TestMediaMetadata:
    def test_as_json_omits_unset_fields(self):
        meta = MediaMetadata(original_media_id="M1")
        assert meta.as_json() == {"original_media_id": "M1"}

    def test_round_trip_through_message(self):
        msg = make_message()
        data = msg.model_dump()
        assert data["kind"] == "image"
        assert InboundMessage.model_validate(data) == msg


class TestAuditEvent:
    def test_timestamp_auto_generated(self):
        event = AuditEvent(
            event_type=AuditEventType.MEDIA_RELAYED,
            action="relay_media",
            result="success",
            risk_level=RiskLevel.INFO,
        )
        assert event.timestamp

    def test_enums_serialize_lowercase(self):
        event = AuditEvent(
            event_type=AuditEventType.MEDIA_RELAY_FAILED,
            action="relay_media_fetch",
            result="degraded",
            risk_level=RiskLevel.MEDIUM,
        )
        data = event.model_dump(mode="json")
        assert data["event_type"] == "media_relay_failed"
        assert data["risk_level"] == "medium"
