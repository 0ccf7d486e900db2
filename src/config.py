"""Runtime configuration for the media relay, read from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_GRAPH_API_BASE = "https://graph.facebook.com/v21.0"
DEFAULT_MEDIA_BUCKET = "messaging-media"


class CorsConfig(BaseModel):
    """Cross-origin headers attached to every webhook response."""

    model_config = ConfigDict(frozen=True)

    allow_origin: str = "*"
    allow_headers: str = "authorization, x-client-info, apikey, content-type"
    allow_methods: str = "GET, POST, OPTIONS"

    def headers(self) -> dict[str, str]:
        return {
            "Access-Control-Allow-Origin": self.allow_origin,
            "Access-Control-Allow-Headers": self.allow_headers,
            "Access-Control-Allow-Methods": self.allow_methods,
        }


class RelaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    supabase_url: str
    supabase_key: str
    whatsapp_token: str
    verify_token: str
    default_organization_id: str
    app_secret: str | None = None
    api_token: str | None = None
    graph_api_base: str = DEFAULT_GRAPH_API_BASE
    media_bucket: str = DEFAULT_MEDIA_BUCKET
    messages_table: str = "messaging_messages"
    channels_table: str = "messaging_channels"
    message_store: Literal["supabase", "sqlite"] = "supabase"
    sqlite_path: str = "data/messages.db"
    audit_log_path: str | None = None
    audit_log_max_bytes: int = Field(default=10_485_760, gt=0)
    audit_log_backup_count: int = Field(default=5, ge=1)
    cors: CorsConfig = Field(default_factory=CorsConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelaySettings:
        """Build settings from the process environment.

        Required variables raise ``KeyError`` when missing; everything else
        falls back to the defaults above.
        """
        env = os.environ if environ is None else environ
        optional: dict[str, object] = {}
        for field_name, var in (
            ("app_secret", "META_APP_SECRET"),
            ("api_token", "RELAY_API_TOKEN"),
            ("graph_api_base", "GRAPH_API_BASE"),
            ("media_bucket", "MEDIA_BUCKET"),
            ("messages_table", "MESSAGES_TABLE"),
            ("channels_table", "CHANNELS_TABLE"),
            ("message_store", "MESSAGE_STORE"),
            ("sqlite_path", "SQLITE_PATH"),
            ("audit_log_path", "AUDIT_LOG_PATH"),
            ("audit_log_max_bytes", "AUDIT_LOG_MAX_BYTES"),
            ("audit_log_backup_count", "AUDIT_LOG_BACKUP_COUNT"),
        ):
            value = env.get(var)
            if value:
                optional[field_name] = value
        if env.get("CORS_ALLOW_ORIGIN"):
            optional["cors"] = CorsConfig(allow_origin=env["CORS_ALLOW_ORIGIN"])

        return cls(
            supabase_url=env["SUPABASE_URL"],
            supabase_key=env["SUPABASE_SERVICE_ROLE_KEY"],
            whatsapp_token=env["META_WHATSAPP_TOKEN"],
            verify_token=env["META_WEBHOOK_VERIFY_TOKEN"],
            default_organization_id=env["DEFAULT_ORGANIZATION_ID"],
            **optional,  # type: ignore[arg-type]
        )
