"""Wire components from one Settings object. The app, the CLI and tests all build through here."""
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import Settings
from storefront.core.dispatcher import NotificationDispatcher
from storefront.core.email import build_transport
from storefront.core.notification_queue import NotificationQueue
from storefront.core.order_locks import OrderLockManager
from storefront.core.payment_verifier import PaymentGateway, PaymentVerifier
from storefront.core.paystack_client import PaystackClient
from storefront.core.reconciliation import Reconciler
from storefront.core.stripe_client import StripeClient
from storefront.core.suppression import SuppressionGate
from storefront.core.templates import TemplateRenderer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Settings
    session_maker: async_sessionmaker[AsyncSession]
    gateway: PaymentGateway
    verifier: PaymentVerifier
    locks: OrderLockManager
    queue: NotificationQueue
    gate: SuppressionGate
    renderer: TemplateRenderer
    transport: object
    reconciler: Reconciler

    def dispatcher(self, worker_id: str | None = None) -> NotificationDispatcher:
        return NotificationDispatcher(
            self.session_maker, self.queue, self.gate, self.renderer, self.transport, self.config, worker_id=worker_id
        )

    async def aclose(self) -> None:
        close = getattr(self.gateway, "aclose", None)
        if close is not None:
            await close()


def build_gateway(config: Settings) -> PaymentGateway:
    provider = config.PAYMENT_PROVIDER.lower()
    if provider == "stripe":
        return StripeClient(config)
    if provider != "paystack":
        raise ValueError(f"Unsupported PAYMENT_PROVIDER: {config.PAYMENT_PROVIDER}")
    return PaystackClient(config)


def build_services(
    config: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    gateway: PaymentGateway | None = None,
    transport=None,
) -> Services:
    gateway = gateway or build_gateway(config)
    transport = transport or build_transport(config)
    verifier = PaymentVerifier(gateway, config)
    locks = OrderLockManager(config.RECONCILE_LOCK_TIMEOUT_SECONDS)
    queue = NotificationQueue(session_maker, config)
    reconciler = Reconciler(session_maker, verifier, locks, queue, config)
    logger.info("Services built: provider=%s transport=%s", gateway.name, type(transport).__name__)
    return Services(
        config=config,
        session_maker=session_maker,
        gateway=gateway,
        verifier=verifier,
        locks=locks,
        queue=queue,
        gate=SuppressionGate(config),
        renderer=TemplateRenderer(),
        transport=transport,
        reconciler=reconciler,
    )
