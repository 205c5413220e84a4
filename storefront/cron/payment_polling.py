"""
Cron job: re-verify pending payment transactions the callback and webhook never settled.
Only transactions older than PAYMENT_POLL_MIN_AGE_MINUTES and younger than
PAYMENT_POLL_MAX_AGE_HOURS are polled.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta

from storefront.core.exceptions import StorefrontError
from storefront.core.ledger import OrderLedger
from storefront.core.services import Services
from storefront.core.utils import utcnow
from storefront.models.enums import PaymentSource

logger = logging.getLogger(__name__)


@dataclass
class PollSummary:
    checked: int = 0
    paid: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0


async def poll_pending_payments(services: Services) -> PollSummary:
    config = services.config
    now = utcnow()
    summary = PollSummary()
    async with services.session_maker() as session:
        transactions = await OrderLedger(session).stale_pending_transactions(
            older_than=now - timedelta(minutes=config.PAYMENT_POLL_MIN_AGE_MINUTES),
            newer_than=now - timedelta(hours=config.PAYMENT_POLL_MAX_AGE_HOURS),
            limit=config.PAYMENT_POLL_BATCH_SIZE,
        )
        work = [(tx.provider_reference, tx.order_id) for tx in transactions]

    logger.info("Cron: pending payment poll started (%s candidates)", len(work))
    for reference, order_id in work:
        summary.checked += 1
        try:
            result = await services.reconciler.reconcile_reference(
                reference, PaymentSource.poll, order_hint=str(order_id) if order_id else None
            )
        except StorefrontError as e:
            summary.errors += 1
            logger.warning("Poll of %s failed: %s (%s)", reference, e.message, e.code)
            continue
        if result.outcome == "paid":
            summary.paid += 1
        elif result.outcome == "failed":
            summary.failed += 1
        else:
            summary.still_pending += 1
    logger.info(
        "Cron: pending payment poll done checked=%s paid=%s failed=%s pending=%s errors=%s",
        summary.checked, summary.paid, summary.failed, summary.still_pending, summary.errors,
    )
    return summary
