"""
Recipient gate checked right before every send: suppression list first, then
per-recipient hourly/daily limits counted from sent delivery logs.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings
from storefront.core.database import dialect_insert
from storefront.core.utils import normalize_recipient, utcnow
from storefront.models.delivery_log import NotificationDeliveryLog
from storefront.models.enums import DeliveryOutcome, SuppressionReason
from storefront.models.suppression import SuppressionEntry

logger = logging.getLogger(__name__)

PERMANENT_REASONS = frozenset({SuppressionReason.hard_bounce, SuppressionReason.complaint, SuppressionReason.unsubscribe})


@dataclass
class GateDecision:
    allowed: bool
    reason: str | None = None
    retry_after: float | None = None  # seconds, set when rate limited

    @property
    def suppressed(self) -> bool:
        return bool(self.reason and self.reason.startswith("suppressed"))


class SuppressionGate:
    def __init__(self, config: Settings):
        self.per_hour = config.RATE_LIMIT_PER_HOUR
        self.per_day = config.RATE_LIMIT_PER_DAY
        self.defer_seconds = config.RATE_LIMIT_DEFER_SECONDS
        self.exempt_event_types = frozenset(config.RATE_LIMIT_EXEMPT_EVENT_TYPES)
        self.soft_bounce_hours = config.SOFT_BOUNCE_SUPPRESSION_HOURS

    @staticmethod
    def _active_clause(now):
        return or_(SuppressionEntry.expires_at.is_(None), SuppressionEntry.expires_at > now)

    async def active_entry(self, db: AsyncSession, recipient: str) -> SuppressionEntry | None:
        result = await db.execute(
            select(SuppressionEntry).where(
                SuppressionEntry.recipient == normalize_recipient(recipient),
                self._active_clause(utcnow()),
            )
        )
        return result.scalar_one_or_none()

    async def _sent_since(self, db: AsyncSession, recipient: str, since) -> int:
        count = await db.scalar(
            select(func.count(NotificationDeliveryLog.id)).where(
                NotificationDeliveryLog.recipient == recipient,
                NotificationDeliveryLog.outcome == DeliveryOutcome.sent.value,
                NotificationDeliveryLog.created_at >= since,
            )
        )
        return int(count or 0)

    async def allowed(self, db: AsyncSession, recipient: str, event_type: str) -> GateDecision:
        recipient = normalize_recipient(recipient)
        entry = await self.active_entry(db, recipient)
        if entry is not None:
            return GateDecision(False, f"suppressed:{entry.reason}")
        if event_type in self.exempt_event_types:
            return GateDecision(True)
        now = utcnow()
        if self.per_hour > 0 and await self._sent_since(db, recipient, now - timedelta(hours=1)) >= self.per_hour:
            logger.info("Rate limit (hourly) reached for recipient %s", recipient)
            return GateDecision(False, "rate_limited:hour", retry_after=self.defer_seconds)
        if self.per_day > 0 and await self._sent_since(db, recipient, now - timedelta(days=1)) >= self.per_day:
            logger.info("Rate limit (daily) reached for recipient %s", recipient)
            return GateDecision(False, "rate_limited:day", retry_after=max(self.defer_seconds, 3600.0))
        return GateDecision(True)

    async def suppress(
        self,
        db: AsyncSession,
        recipient: str,
        reason: SuppressionReason | str,
        source: str | None = None,
    ) -> SuppressionEntry:
        """
        Insert or extend a suppression. Permanent reasons clear expires_at; a soft
        bounce never shortens an active entry. Caller commits.
        """
        recipient = normalize_recipient(recipient)
        reason = SuppressionReason(reason)
        now = utcnow()
        expires_at = None if reason in PERMANENT_REASONS else now + timedelta(hours=self.soft_bounce_hours)
        await db.execute(
            dialect_insert(db, SuppressionEntry)
            .values(recipient=recipient, reason=reason.value, source=source, expires_at=expires_at,
                    created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["recipient"])
        )
        result = await db.execute(select(SuppressionEntry).where(SuppressionEntry.recipient == recipient))
        entry = result.scalar_one()
        active = entry.expires_at is None or entry.expires_at > now
        if not active:
            entry.reason = reason.value
            entry.expires_at = expires_at
        elif expires_at is None:
            entry.expires_at = None
            entry.reason = reason.value
        elif entry.expires_at is not None and entry.expires_at < expires_at:
            entry.expires_at = expires_at
        entry.source = source or entry.source
        entry.updated_at = now
        await db.flush()
        logger.info("Recipient %s suppressed (%s, source=%s)", recipient, reason.value, source)
        return entry

    async def lift(self, db: AsyncSession, recipient: str) -> bool:
        """Resubscribe: expire the entry now. Caller commits."""
        entry = await self.active_entry(db, recipient)
        if entry is None:
            return False
        entry.expires_at = utcnow()
        entry.updated_at = utcnow()
        await db.flush()
        logger.info("Suppression lifted for %s", entry.recipient)
        return True

    async def list_entries(self, db: AsyncSession, active_only: bool = True, limit: int = 100,
                           offset: int = 0) -> list[SuppressionEntry]:
        stmt = select(SuppressionEntry).order_by(SuppressionEntry.created_at.desc()).limit(limit).offset(offset)
        if active_only:
            stmt = stmt.where(self._active_clause(utcnow()))
        result = await db.execute(stmt)
        return list(result.scalars().all())
