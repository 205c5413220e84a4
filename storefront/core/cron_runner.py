"""
Background loops (non-blocking): notification dispatch, stuck-row sweep and
pending payment polling. Started on app startup; cancelled on shutdown.
"""
import asyncio
import logging

from storefront.core.services import Services
from storefront.cron.payment_polling import poll_pending_payments

logger = logging.getLogger(__name__)


async def run_dispatch_loop(services: Services, worker_id: str | None = None) -> None:
    """Dispatch continuously; sleep only when a batch comes back empty."""
    dispatcher = services.dispatcher(worker_id)
    interval = max(0.5, services.config.DISPATCH_POLL_INTERVAL_SECONDS)
    logger.info("Notification dispatcher started", extra={"worker_id": dispatcher.worker_id})
    while True:
        try:
            stats = await dispatcher.run_once()
            if stats.claimed == 0:
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Notification dispatcher cancelled", extra={"worker_id": dispatcher.worker_id})
            break
        except Exception as e:
            logger.exception("Notification dispatcher loop error: %s", e)
            await asyncio.sleep(interval)


async def run_stuck_sweep_loop(services: Services) -> None:
    interval = max(10.0, services.config.STUCK_SWEEP_INTERVAL_SECONDS)
    timeout = services.config.PROCESSING_TIMEOUT_SECONDS
    logger.info("Stuck notification sweep started (interval=%.0fs timeout=%.0fs)", interval, timeout)
    while True:
        try:
            await asyncio.sleep(interval)
            await services.queue.sweep_stuck(timeout)
        except asyncio.CancelledError:
            logger.info("Stuck notification sweep cancelled")
            break
        except Exception as e:
            logger.exception("Stuck notification sweep error: %s", e)


async def run_payment_poll_loop(services: Services) -> None:
    interval = max(30.0, services.config.PAYMENT_POLL_INTERVAL_SECONDS)
    logger.info("Pending payment poll started (interval=%.0fs)", interval)
    # Small delay so app is fully up before first run
    await asyncio.sleep(10)
    while True:
        try:
            await poll_pending_payments(services)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Pending payment poll cancelled")
            break
        except Exception as e:
            logger.exception("Pending payment poll loop error: %s", e)
            await asyncio.sleep(interval)


def start_background_tasks(services: Services) -> list[asyncio.Task]:
    tasks = [
        asyncio.create_task(run_dispatch_loop(services), name=f"dispatch-{i}")
        for i in range(max(1, services.config.DISPATCH_WORKERS))
    ]
    tasks.append(asyncio.create_task(run_stuck_sweep_loop(services), name="stuck-sweep"))
    tasks.append(asyncio.create_task(run_payment_poll_loop(services), name="payment-poll"))
    return tasks


async def stop_background_tasks(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass  # expected on cancel
