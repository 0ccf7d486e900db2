"""FastAPI application receiving WhatsApp webhooks and relaying their media."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from supabase import create_client

from src.audit.logger import AuditLogger
from src.config import CorsConfig, RelaySettings
from src.media.fetcher import MediaFetcher
from src.media.storage import SupabaseMediaStorage
from src.models import AuditEvent, AuditEventType, RiskLevel
from src.retry.service import MediaRetryService, RetryOutcome
from src.server.auth_middleware import AuthMiddleware
from src.store.base import MessageStore, PersistenceError
from src.store.sqlite import SQLiteMessageStore
from src.store.supabase_store import SupabaseMessageStore
from src.webhook.relay import MediaRelayPipeline
from src.webhook.whatsapp import PayloadParseError, WhatsAppWebhook

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook/whatsapp"
RETRY_PATH = "/media/retry"

_RETRY_STATUS = {
    RetryOutcome.STORED: 200,
    RetryOutcome.ALREADY_STORED: 200,
    RetryOutcome.NOT_FOUND: 404,
    RetryOutcome.NOT_MEDIA: 400,
    RetryOutcome.FAILED: 502,
}


@dataclass
class RelayComponents:
    webhook: WhatsAppWebhook
    pipeline: MediaRelayPipeline
    retry_service: MediaRetryService
    store: MessageStore
    audit_logger: AuditLogger | None


def build_components(settings: RelaySettings) -> RelayComponents:
    """Wire the fetcher, storage, store and pipeline from settings."""
    audit_logger = AuditLogger.from_settings(settings)
    client = create_client(settings.supabase_url, settings.supabase_key)
    store: MessageStore
    if settings.message_store == "sqlite":
        store = SQLiteMessageStore(settings.sqlite_path)
    else:
        store = SupabaseMessageStore(
            client,
            messages_table=settings.messages_table,
            channels_table=settings.channels_table,
        )
    fetcher = MediaFetcher(settings.whatsapp_token, graph_api_base=settings.graph_api_base)
    storage = SupabaseMediaStorage(client, bucket=settings.media_bucket)
    return RelayComponents(
        webhook=WhatsAppWebhook(settings.verify_token, app_secret=settings.app_secret),
        pipeline=MediaRelayPipeline(
            fetcher,
            storage,
            store,
            default_organization_id=settings.default_organization_id,
            audit_logger=audit_logger,
        ),
        retry_service=MediaRetryService(fetcher, storage, store, audit_logger=audit_logger),
        store=store,
        audit_logger=audit_logger,
    )


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = RelaySettings.from_env()
    components = build_components(settings)
    return create_app(
        components.webhook,
        components.pipeline,
        cors=settings.cors,
        retry_service=components.retry_service,
        api_token=settings.api_token,
        audit_logger=components.audit_logger,
    )


def create_app(
    webhook: WhatsAppWebhook,
    pipeline: MediaRelayPipeline,
    cors: CorsConfig | None = None,
    retry_service: MediaRetryService | None = None,
    api_token: str | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Create the relay app.

    ``POST /media/retry`` is only mounted when both a retry service and an
    API token are given.
    """
    app = FastAPI(docs_url=None, redoc_url=None)
    cors_headers = (cors or CorsConfig()).headers()

    def _audit(event_type: AuditEventType, request: Request, result: str,
               risk: RiskLevel, details: dict[str, object]) -> None:
        if audit_logger:
            audit_logger.log(AuditEvent(
                event_type=event_type,
                source_ip=request.client.host if request.client else None,
                action=f"{request.method} {request.url.path}",
                result=result,
                risk_level=risk,
                details=details,
            ))

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.options(WEBHOOK_PATH)
    async def webhook_preflight() -> Response:
        return Response(status_code=200, headers=cors_headers)

    @app.get(WEBHOOK_PATH)
    async def webhook_verify(request: Request) -> Response:
        result = webhook.handle_verification(dict(request.query_params))
        if result is None:
            return JSONResponse(
                {"error": "Unsupported hub.mode"}, status_code=400, headers=cors_headers,
            )
        if result["status_code"] != 200:
            return JSONResponse(
                {"error": result["error"]}, status_code=result["status_code"], headers=cors_headers,
            )
        return PlainTextResponse(result["content"], headers=cors_headers)

    @app.post(WEBHOOK_PATH)
    async def webhook_receive(request: Request) -> Response:
        body = await request.body()

        if webhook.requires_signature and not webhook.verify_signature(
            dict(request.headers), body,
        ):
            _audit(AuditEventType.WEBHOOK_REJECTED, request, "failure", RiskLevel.HIGH,
                   {"reason": "invalid_signature"})
            return JSONResponse(
                {"error": "Invalid webhook signature"}, status_code=401, headers=cors_headers,
            )

        try:
            batch = webhook.parse(body)
        except PayloadParseError as exc:
            logger.warning("Rejected webhook payload: %s", exc)
            _audit(AuditEventType.WEBHOOK_REJECTED, request, "failure", RiskLevel.LOW,
                   {"reason": str(exc)})
            return JSONResponse({"error": str(exc)}, status_code=400, headers=cors_headers)

        try:
            summary = await pipeline.dispatch(batch)
        except PersistenceError as exc:
            # Non-2xx makes the provider redeliver the whole batch
            logger.error("Message store unavailable: %s", exc)
            _audit(AuditEventType.PERSISTENCE_FAILURE, request, "failure", RiskLevel.HIGH,
                   {"reason": str(exc)})
            return JSONResponse(
                {"error": "Message store unavailable"}, status_code=500, headers=cors_headers,
            )

        _audit(AuditEventType.WEBHOOK_RECEIVED, request, "success", RiskLevel.INFO,
               summary.as_dict())
        return JSONResponse({"success": True, **summary.as_dict()}, headers=cors_headers)

    if retry_service is not None and api_token:

        @app.post(RETRY_PATH)
        async def media_retry(request: Request) -> Response:
            try:
                payload = await request.json()
            except ValueError:
                return JSONResponse({"error": "Body is not valid JSON"}, status_code=400)
            message_id = payload.get("message_id") if isinstance(payload, dict) else None
            if not message_id or not isinstance(message_id, str):
                return JSONResponse({"error": "message_id is required"}, status_code=400)

            try:
                result = await retry_service.retry(message_id)
            except PersistenceError as exc:
                logger.error("Media retry for %s hit the message store: %s", message_id, exc)
                return JSONResponse({"error": "Message store unavailable"}, status_code=500)
            return JSONResponse(
                {"success": result.outcome in (RetryOutcome.STORED, RetryOutcome.ALREADY_STORED),
                 **result.as_dict()},
                status_code=_RETRY_STATUS[result.outcome],
            )

        app.add_middleware(
            AuthMiddleware,
            token=api_token,
            protected_paths=frozenset({RETRY_PATH}),
            audit_logger=audit_logger,
        )

    return app
