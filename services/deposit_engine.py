"""
Deposit Engine - wiring of the lifecycle services

One DepositEngine owns a single store, lock manager, audit trail and notification
dispatcher; every service shares them so per-deposit locking and the audit trail
cover API calls, gateway events and scheduler sweeps alike.
"""

import logging
from typing import Any, Dict, Optional

from config import Config
from services.admin_service import AdminService
from services.audit_trail_service import AuditTrailService
from services.deposit_expiry_service import DepositExpiryService
from services.deposit_service import DepositService
from services.deposit_store import DepositStore, InMemoryDepositStore, SqlDepositStore
from services.email import MessageTransport, build_transport
from services.notification_service import NotificationService
from services.payment_gateway import PaymentGateway, build_gateway
from services.payment_orchestrator import PaymentOrchestrator
from services.webhook_security_service import parse_gateway_event
from jobs.reconciliation_scheduler import ReconciliationScheduler
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.deposit_locks import DepositLockManager

logger = logging.getLogger(__name__)


def build_store(database_url: Optional[str] = None) -> DepositStore:
    """SQL store when a database URL is configured, otherwise in-memory"""
    url = database_url or Config.DATABASE_URL
    if not url:
        logger.info("💾 RECORD_STORE: in-memory (volatile)")
        return InMemoryDepositStore()

    from database import build_engine, build_session_factory, create_tables

    engine = build_engine(url)
    create_tables(engine)
    return SqlDepositStore(build_session_factory(engine))


class DepositEngine:
    """Container exposing the deposit lifecycle services to the outer layers"""

    def __init__(
        self,
        store: Optional[DepositStore] = None,
        gateway: Optional[PaymentGateway] = None,
        transport: Optional[MessageTransport] = None,
        clock: Clock = get_naive_utc_now,
        payment_profile: Optional[str] = None,
        lock_timeout_seconds: Optional[float] = None,
        gateway_timeout_seconds: Optional[float] = None,
        send_delay_seconds: Optional[float] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.clock = clock
        self.webhook_secret = webhook_secret
        self.store = store if store is not None else InMemoryDepositStore()
        self.locks = DepositLockManager(timeout_seconds=lock_timeout_seconds)
        self.audit_trail = AuditTrailService(clock=clock)
        self.notifications = NotificationService(
            self.audit_trail,
            transport=transport,
            clock=clock,
            send_delay_seconds=send_delay_seconds,
        )
        self.payments = PaymentOrchestrator(
            self.store,
            self.locks,
            gateway if gateway is not None else build_gateway(),
            clock=clock,
            timeout_seconds=gateway_timeout_seconds,
            profile=payment_profile,
            notifications=self.notifications,
        )
        self.expiry = DepositExpiryService(
            self.store,
            self.locks,
            self.audit_trail,
            self.notifications,
            self.payments,
            clock=clock,
        )
        self.deposits = DepositService(self.store, self.locks, self.expiry, clock=clock)
        self.admin = AdminService(
            self.store,
            self.locks,
            self.audit_trail,
            self.payments,
            self.notifications,
            clock=clock,
        )
        self.scheduler = ReconciliationScheduler(self.expiry)

    @classmethod
    def from_config(cls) -> "DepositEngine":
        """Build the engine from environment configuration"""
        engine = cls(
            store=build_store(),
            gateway=build_gateway(),
            transport=build_transport(),
        )
        logger.info(
            f"✅ DEPOSIT_ENGINE: store={type(engine.store).__name__} "
            f"gateway={engine.payments.gateway.name} profile={engine.payments.profile}"
        )
        return engine

    async def handle_webhook(self, payload: str, signature_header: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify and apply one gateway webhook

        Raises:
            InvalidInput: bad signature or malformed payload
        """
        event = parse_gateway_event(payload, signature_header, secret=self.webhook_secret)
        handled = await self.payments.handle_gateway_event(event)
        return {"received": True, "handled": handled, "type": event.get("type")}

    def start(self) -> None:
        self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        logger.info("📴 Deposit engine stopped")
