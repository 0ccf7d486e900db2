"""WhatsApp Business webhook handling.

HMAC verification, the Meta verification challenge, and extraction of
messages and status updates from the Cloud API payload. Meta sometimes
serialises arrays as objects keyed by index ({"0": {...}}); both shapes
are accepted.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import UTC, datetime
from typing import Any

from src.models import MessageKind, StatusUpdate
from src.webhook.models import ParsedMessage, WebhookBatch

logger = logging.getLogger(__name__)

_BUSINESS_ACCOUNT_OBJECT = "whatsapp_business_account"


class PayloadParseError(Exception):
    """Raised when a webhook body is not a well-formed WhatsApp delivery."""


def _as_list(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return list(value.values())
    raise PayloadParseError(f"{where} must be a list")


def _as_dict(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise PayloadParseError(f"{where} must be an object")
    return value


def _as_str(value: Any, where: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise PayloadParseError(f"{where} must be a string")


def _to_iso(timestamp: Any, where: str) -> str:
    if timestamp in (None, ""):
        return datetime.now(UTC).isoformat()
    try:
        return datetime.fromtimestamp(int(timestamp), UTC).isoformat()
    except (TypeError, ValueError, OverflowError) as exc:
        raise PayloadParseError(f"{where}.timestamp is not a unix timestamp") from exc


class WhatsAppWebhook:
    """Verifies and parses WhatsApp Business API webhook deliveries."""

    def __init__(self, verify_token: str, app_secret: str | None = None) -> None:
        self._verify_token = verify_token
        self._app_secret = app_secret

    @property
    def requires_signature(self) -> bool:
        return bool(self._app_secret)

    def verify_signature(self, headers: dict[str, str], body: bytes) -> bool:
        """Check the ``X-Hub-Signature-256`` HMAC-SHA256 header in constant time."""
        if not self._app_secret:
            return False
        signature = headers.get("x-hub-signature-256", "")
        if not signature.startswith("sha256="):
            return False

        expected = hmac.new(
            self._app_secret.encode(), body, hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(signature[7:], expected)

    def handle_verification(
        self, params: dict[str, str],
    ) -> dict[str, Any] | None:
        """Answer the Meta subscription challenge (GET).

        Returns None for modes other than ``subscribe``.
        """
        mode = params.get("hub.mode")
        if mode != "subscribe":
            return None

        token = params.get("hub.verify_token", "")
        if hmac.compare_digest(token, self._verify_token):
            return {
                "status_code": 200,
                "content": params.get("hub.challenge", ""),
            }
        return {"status_code": 403, "error": "Invalid verify token"}

    def parse(self, body: bytes) -> WebhookBatch:
        """Decode a webhook body into messages and status updates.

        Raises PayloadParseError before anything is extracted, so a
        rejected delivery has no side effects.
        """
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PayloadParseError("Body is not valid JSON") from exc
        return self.extract(_as_dict(payload, "payload"))

    def extract(self, payload: dict[str, Any]) -> WebhookBatch:
        if payload.get("object") != _BUSINESS_ACCOUNT_OBJECT:
            raise PayloadParseError(f"Unexpected webhook object: {payload.get('object')!r}")
        if "entry" not in payload:
            raise PayloadParseError("Missing entry")

        batch = WebhookBatch()
        for entry in _as_list(payload["entry"], "entry"):
            entry = _as_dict(entry, "entry[]")
            for change in _as_list(entry.get("changes"), "changes"):
                change = _as_dict(change, "changes[]")
                if change.get("field") != "messages":
                    logger.debug("Skipping webhook change field %r", change.get("field"))
                    continue
                value = _as_dict(change.get("value") or {}, "value")
                self._extract_value(value, batch)
        return batch

    def _extract_value(self, value: dict[str, Any], batch: WebhookBatch) -> None:
        metadata = _as_dict(value.get("metadata") or {}, "metadata")
        channel_id = _as_str(metadata.get("phone_number_id"), "metadata.phone_number_id")
        names: dict[str, str] = {}
        for contact in _as_list(value.get("contacts"), "contacts"):
            contact = _as_dict(contact, "contacts[]")
            wa_id = _as_str(contact.get("wa_id"), "contacts[].wa_id")
            profile = _as_dict(contact.get("profile") or {}, "contacts[].profile")
            name = _as_str(profile.get("name"), "contacts[].profile.name")
            if wa_id and name:
                names[wa_id] = name

        for msg in _as_list(value.get("messages"), "messages"):
            batch.messages.append(
                self._extract_message(_as_dict(msg, "messages[]"), channel_id, names),
            )
        for status in _as_list(value.get("statuses"), "statuses"):
            status = _as_dict(status, "statuses[]")
            status_id = _as_str(status.get("id"), "statuses[].id")
            state = _as_str(status.get("status"), "statuses[].status")
            if not status_id or not state:
                raise PayloadParseError("Status update without id or status")
            batch.statuses.append(StatusUpdate(
                provider_message_id=status_id,
                status=state,
                timestamp=_to_iso(status.get("timestamp"), "statuses[]"),
            ))

    def _extract_message(
        self,
        msg: dict[str, Any],
        channel_id: str | None,
        names: dict[str, str],
    ) -> ParsedMessage:
        message_id = _as_str(msg.get("id"), "messages[].id")
        sender = _as_str(msg.get("from"), "messages[].from")
        if not message_id or not sender:
            raise PayloadParseError("Message without id or sender")

        msg_type = _as_str(msg.get("type"), "messages[].type") or ""
        kind = MessageKind.from_provider(msg_type)
        content: dict[str, Any] = {}
        if kind is not MessageKind.UNKNOWN:
            content = _as_dict(msg.get(msg_type) or {}, f"messages[].{msg_type}")

        media_id: str | None = None
        declared_type: str | None = None
        if kind.is_media:
            media_id = _as_str(content.get("id"), f"{msg_type}.id")
            declared_type = _as_str(content.get("mime_type"), f"{msg_type}.mime_type")
            if not media_id:
                raise PayloadParseError(f"{msg_type} message {message_id} has no media id")

        return ParsedMessage(
            provider_message_id=message_id,
            channel_id=channel_id,
            sender_id=sender,
            sender_name=names.get(sender),
            kind=kind,
            body=self._body(kind, msg_type, content),
            sent_at=_to_iso(msg.get("timestamp"), "messages[]"),
            media_id=media_id,
            declared_content_type=declared_type,
        )

    @staticmethod
    def _body(kind: MessageKind, msg_type: str, content: dict[str, Any]) -> str | None:
        def text(key: str) -> str | None:
            return _as_str(content.get(key), f"{msg_type}.{key}")

        if kind is MessageKind.TEXT:
            return text("body") or ""
        if kind in (MessageKind.IMAGE, MessageKind.VIDEO):
            return text("caption") or f"[{msg_type}]"
        if kind is MessageKind.DOCUMENT:
            return text("filename") or text("caption") or "[document]"
        if kind is MessageKind.LOCATION:
            return text("name") or text("address") or "[location]"
        if kind is MessageKind.REACTION:
            return text("emoji")
        return f"[{msg_type or 'unknown'}]"
