"""Click CLI for inspecting and retrying media that failed to relay."""

from __future__ import annotations

import asyncio
import json

import click

from src.config import RelaySettings
from src.models import AuditEventType
from src.retry.service import MediaRetryService, RetryOutcome
from src.server.app import RelayComponents, build_components


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """WhatsApp media relay maintenance CLI (configured from the environment)."""
    ctx.ensure_object(dict)
    if "components" not in ctx.obj:
        ctx.obj["components"] = build_components(RelaySettings.from_env())


def _components(ctx: click.Context) -> RelayComponents:
    return ctx.obj["components"]


@cli.command()
@click.option("--limit", default=50, show_default=True, help="Maximum rows to list.")
@click.pass_context
def pending(ctx: click.Context, limit: int) -> None:
    """List messages whose media has not been stored yet."""
    messages = _components(ctx).store.pending_media(limit)
    output = [
        {
            "message_id": m.provider_message_id,
            "kind": m.kind.value,
            "organization_id": m.organization_id,
            "original_media_id": m.metadata.original_media_id,
            "media_error": m.metadata.media_error,
            "sent_at": m.sent_at,
        }
        for m in messages
    ]
    click.echo(json.dumps(output, indent=2))


@cli.command()
@click.argument("message_id")
@click.pass_context
def retry(ctx: click.Context, message_id: str) -> None:
    """Re-download and store the media of one message."""
    service: MediaRetryService = _components(ctx).retry_service
    result = asyncio.run(service.retry(message_id))
    click.echo(json.dumps(result.as_dict(), indent=2))
    if result.outcome not in (RetryOutcome.STORED, RetryOutcome.ALREADY_STORED):
        raise SystemExit(1)


@cli.command("retry-all")
@click.option("--limit", default=50, show_default=True, help="Maximum rows to retry.")
@click.pass_context
def retry_all(ctx: click.Context, limit: int) -> None:
    """Retry every pending message, oldest first."""
    service: MediaRetryService = _components(ctx).retry_service
    results = asyncio.run(service.retry_pending(limit))
    stored = sum(1 for r in results if r.outcome == RetryOutcome.STORED)
    click.echo(json.dumps([r.as_dict() for r in results], indent=2))
    click.echo(f"Stored {stored} of {len(results)}", err=True)


@cli.command()
@click.option("--failures-only", is_flag=True, help="Only media relay failures.")
@click.pass_context
def events(ctx: click.Context, failures_only: bool) -> None:
    """Print events from the audit log."""
    audit_logger = _components(ctx).audit_logger
    if audit_logger is None:
        raise click.ClickException("AUDIT_LOG_PATH is not set")
    wanted = {AuditEventType.MEDIA_RELAY_FAILED} if failures_only else None
    for event in audit_logger.read_events():
        if wanted is None or event.event_type in wanted:
            click.echo(event.model_dump_json())
