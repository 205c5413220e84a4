"""Storefront ops CLI: manual reconciliation and notification queue maintenance.

Every command is idempotent, so re-running after a partial failure is safe.
"""

import asyncio
import json
import logging
from uuid import UUID

import click

from storefront.core.config import settings
from storefront.core.database import async_session_maker
from storefront.core.exceptions import StorefrontError
from storefront.core.logging_config import configure_logging
from storefront.core.services import Services, build_services
from storefront.cron.payment_polling import poll_pending_payments
from storefront.models.enums import PaymentSource

logger = logging.getLogger(__name__)


class CLIError(click.ClickException):
    """Typed CLI failure; exit code follows the domain error."""

    exit_code = 1


class RetryableCLIError(CLIError):
    exit_code = 75  # EX_TEMPFAIL


def _run(coro_factory):
    """Build services, run one coroutine against them, close them."""

    async def runner():
        services = build_services(settings, async_session_maker)
        try:
            return await coro_factory(services)
        except StorefrontError as e:
            if e.retryable:
                raise RetryableCLIError(f"{e.code}: {e.message}") from e
            raise CLIError(f"{e.code}: {e.message}") from e
        finally:
            await services.aclose()

    return asyncio.run(runner())


def _echo(payload: dict) -> None:
    click.echo(json.dumps(payload, default=str, indent=2, sort_keys=True))


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    """Storefront order backend operations."""
    configure_logging(log_level or settings.LOG_LEVEL)


@cli.command()
@click.argument("reference")
@click.option("--order-id", default=None, help="Order to reconcile against when the reference is unknown locally.")
def reconcile(reference: str, order_id: str | None) -> None:
    """Verify REFERENCE with the provider and apply the result."""

    async def go(services: Services):
        result = await services.reconciler.reconcile_reference(reference, PaymentSource.manual, order_hint=order_id)
        return {
            "outcome": result.outcome,
            "order_id": result.order_id,
            "order_status": result.order_status,
            "payment_status": result.payment_status,
            "notifications": result.notifications,
        }

    _echo(_run(go))


@cli.command("requeue")
@click.argument("event_id", type=click.UUID)
def requeue(event_id: UUID) -> None:
    """Reset one failed notification to queued."""

    async def go(services: Services):
        return {"event_id": event_id, "requeued": await services.queue.requeue_failed(event_id)}

    _echo(_run(go))


@cli.command("requeue-failed")
@click.option("--event-type", default=None, help="Only requeue this event type.")
def requeue_failed(event_type: str | None) -> None:
    """Reset every failed notification to queued."""

    async def go(services: Services):
        return {"requeued_count": await services.queue.requeue_all_failed(event_type)}

    _echo(_run(go))


@cli.command()
@click.option("--timeout", type=float, default=None, help="Seconds in processing before a row counts as stuck.")
def sweep(timeout: float | None) -> None:
    """Recover notifications stuck in processing."""

    async def go(services: Services):
        result = await services.queue.sweep_stuck(timeout or services.config.PROCESSING_TIMEOUT_SECONDS)
        return {"requeued": result.requeued, "failed": result.failed}

    _echo(_run(go))


@cli.command("dispatch-once")
def dispatch_once() -> None:
    """Claim and dispatch a single batch of due notifications."""

    async def go(services: Services):
        stats = await services.dispatcher().run_once()
        return stats.as_dict()

    _echo(_run(go))


@cli.command("poll-payments")
def poll_payments() -> None:
    """Re-verify stale pending payment transactions."""

    async def go(services: Services):
        return (await poll_pending_payments(services)).__dict__

    _echo(_run(go))


@cli.command()
@click.option("--days", type=int, default=None, help="Archive sent/failed rows older than this many days.")
def archive(days: int | None) -> None:
    """Archive terminal notification events past the retention window."""

    async def go(services: Services):
        older_than = days if days is not None else services.config.NOTIFICATION_RETENTION_DAYS
        return {"archived": await services.queue.archive_terminal(older_than)}

    _echo(_run(go))


if __name__ == "__main__":
    cli()
