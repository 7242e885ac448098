"""Click CLI for capturing, inspecting and processing webhooks."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

import click

from src.audit.logger import validate_audit_chain
from src.config import Settings
from src.models import WEBHOOK_SORT_KEY, WebhookKey, WebhookStatus
from src.runtime import Runtime, build_runtime
from src.webhook.handlers import SimulatedWork
from src.webhook.poller import ChangeFeedPoller, RetryQueueWorker


@click.group()
@click.option("--db", default=None, help="Webhook database path (default: $WEBHOOK_DB_PATH).")
@click.option("--retry-db", default=None, help="Retry queue database path.")
@click.option("--audit-log", default=None, help="Audit log file path.")
@click.option("--max-retries", type=int, default=None, help="Processing attempts before escalation.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    db: str | None,
    retry_db: str | None,
    audit_log: str | None,
    max_retries: int | None,
    verbose: bool,
) -> None:
    """Serverless webhook client: idempotent capture and processing."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    overrides: dict[str, object] = {
        "webhook_db_path": db,
        "retry_queue_db_path": retry_db,
        "audit_log_path": audit_log,
        "max_retries": max_retries,
    }
    settings = Settings.from_env().model_copy(
        update={k: v for k, v in overrides.items() if v is not None},
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


def _runtime(ctx: click.Context, simulate_error_rate: float | None = None) -> Runtime:
    handler = None
    if simulate_error_rate is not None:
        handler = SimulatedWork(error_rate=simulate_error_rate)
    runtime = build_runtime(ctx.obj["settings"], handler=handler)
    ctx.call_on_close(runtime.close)
    return runtime


@cli.command()
@click.argument("origin")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def capture(ctx: click.Context, origin: str, payload_file: Path) -> None:
    """Capture a webhook payload from a JSON file."""
    runtime = _runtime(ctx)
    payload = json.loads(payload_file.read_text())
    outcome = asyncio.run(runtime.capture.capture(origin, payload))
    click.echo(json.dumps({
        "result": outcome.result.value,
        "key": str(outcome.key) if outcome.key else None,
        "reason": outcome.reason,
    }, indent=2))
    if not outcome.accepted:
        ctx.exit(1)


@cli.command()
@click.argument("partition_key")
@click.option("--sort-key", default=WEBHOOK_SORT_KEY, show_default=True)
@click.pass_context
def status(ctx: click.Context, partition_key: str, sort_key: str) -> None:
    """Show the processing status of a webhook."""
    runtime = _runtime(ctx)
    key = WebhookKey(partition_key=partition_key, sort_key=sort_key)
    record = asyncio.run(runtime.store.get_status(key))
    if record is None:
        click.echo(f"Webhook not found: {key}", err=True)
        ctx.exit(1)
    click.echo(record.model_dump_json(indent=2))


@cli.command()
@click.option("--limit", default=100, show_default=True)
@click.pass_context
def escalated(ctx: click.Context, limit: int) -> None:
    """List webhooks waiting for an operator."""
    runtime = _runtime(ctx)
    records = asyncio.run(runtime.store.list_by_status(WebhookStatus.OPERATOR_REQUIRED, limit))
    if not records:
        click.echo("No escalated webhooks.")
        return
    for record in records:
        click.echo(f"  {record.key}  retries={record.retries}")


@cli.command()
@click.option("--after", default=0, show_default=True, help="Change-feed sequence to start after.")
@click.option("--batch-size", type=int, default=None)
@click.option("--simulate-error-rate", type=float, default=None, help="Use simulated work.")
@click.pass_context
def process(
    ctx: click.Context, after: int, batch_size: int | None, simulate_error_rate: float | None,
) -> None:
    """Run one pass over the capture change-feed."""
    runtime = _runtime(ctx, simulate_error_rate)
    poller = ChangeFeedPoller(
        runtime.store,
        runtime.processor,
        batch_size=batch_size or runtime.settings.poll_batch_size,
        after_sequence=after,
    )
    result = asyncio.run(poller.poll_once())
    click.echo(json.dumps({"cursor": poller.cursor, **result.model_dump()}, indent=2))


@cli.command()
@click.option("--batch-size", type=int, default=None)
@click.option("--simulate-error-rate", type=float, default=None, help="Use simulated work.")
@click.pass_context
def retries(ctx: click.Context, batch_size: int | None, simulate_error_rate: float | None) -> None:
    """Run one pass over the retry queue."""
    runtime = _runtime(ctx, simulate_error_rate)
    worker = RetryQueueWorker(
        runtime.retry_queue,
        runtime.processor,
        batch_size=batch_size or runtime.settings.poll_batch_size,
    )
    result = asyncio.run(worker.poll_once())
    click.echo(result.model_dump_json(indent=2))


@cli.command("dead-letters")
@click.option("--limit", default=100, show_default=True)
@click.pass_context
def dead_letters(ctx: click.Context, limit: int) -> None:
    """List retry messages that exhausted their receive count."""
    runtime = _runtime(ctx)
    deliveries = runtime.retry_queue.dead_letters(limit)
    if not deliveries:
        click.echo("No dead-lettered retry messages.")
        return
    for delivery in deliveries:
        message = delivery.message
        click.echo(f"  {message.key}  retries={message.retries}  reason={message.reason}")


@cli.command()
@click.option("--simulate-error-rate", type=float, default=None, help="Use simulated work.")
@click.pass_context
def run(ctx: click.Context, simulate_error_rate: float | None) -> None:
    """Poll the change-feed and retry queue until interrupted."""
    runtime = _runtime(ctx, simulate_error_rate)
    settings = runtime.settings
    feed = ChangeFeedPoller(
        runtime.store, runtime.processor,
        batch_size=settings.poll_batch_size, interval_seconds=settings.poll_interval_seconds,
    )
    worker = RetryQueueWorker(
        runtime.retry_queue, runtime.processor,
        batch_size=settings.poll_batch_size, interval_seconds=settings.poll_interval_seconds,
    )

    async def _main() -> None:
        await asyncio.gather(feed.run_forever(), worker.run_forever())

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        click.echo("Stopped.", err=True)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the capture and processing HTTP API."""
    import uvicorn

    settings: Settings = ctx.obj["settings"]
    # The app factory reads its configuration from the environment
    os.environ["WEBHOOK_DB_PATH"] = settings.webhook_db_path
    os.environ["RETRY_QUEUE_DB_PATH"] = settings.retry_queue_db_path
    os.environ["MAX_RETRIES"] = str(settings.max_retries)
    os.environ["RETRY_QUEUE_MAX_RECEIVE_COUNT"] = str(settings.retry_max_receive_count)
    if settings.audit_log_path:
        os.environ["AUDIT_LOG_PATH"] = settings.audit_log_path
    uvicorn.run("src.api.app:create_app_from_env", factory=True, host=host, port=port)


@cli.command("audit-verify")
@click.argument("log_path", type=click.Path(dir_okay=False, path_type=Path))
def audit_verify(log_path: Path) -> None:
    """Verify the hash chain of an audit log."""
    if not log_path.exists():
        click.echo(f"Audit log not found: {log_path}", err=True)
        raise SystemExit(1)
    result = validate_audit_chain(log_path)
    if result.valid:
        click.echo(f"Audit chain valid ({result.entries} entries).")
        return
    click.echo(f"Audit chain broken at line {result.broken_at_line}.", err=True)
    raise SystemExit(1)


if __name__ == "__main__":
    cli()
