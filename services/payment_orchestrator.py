"""
Payment Orchestrator - hold, capture, cancel and refund over the payment gateway

Two flavours of every operation:
- deposit-level methods (hold/capture/cancel/refund) mutate a Deposit the caller
  already holds the lock for and has loaded; the caller stores it
- id-level methods (initiate_hold/capture_payment/cancel_hold/refund_payment)
  take the lock, load, apply and store themselves

Gateway calls are bounded by a timeout; a timeout counts as a gateway failure.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from config import Config
from models import (
    Deposit,
    DepositStatus,
    NotificationType,
    NOTIFICATION_PREFERENCE_KEYS,
    PaymentStatus,
    REFUNDABLE_PAYMENT_STATUSES,
    SETTLED_PAYMENT_STATUSES,
)
from services.deposit_store import DepositStore
from services.payment_gateway import PaymentGateway
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.deposit_locks import DepositLockManager
from utils.exceptions import DepositNotFound, InvalidState, PaymentGatewayError

logger = logging.getLogger(__name__)

GATEWAY_PROFILE = "gateway"
SIMPLE_PROFILE = "simple"

# Gateway event type -> (payment_status, status or None)
HOLD_SUCCEEDED_EVENTS = ("checkout.session.completed", "payment_intent.amount_capturable_updated")
PAYMENT_FAILED_EVENT = "payment_intent.payment_failed"
PAYMENT_CANCELED_EVENT = "payment_intent.canceled"
CAPTURE_SUCCEEDED_EVENT = "payment_intent.succeeded"


class PaymentOrchestrator:
    """Drives a deposit's payment status through the external gateway"""

    CANCELLABLE_PAYMENT_STATUSES = frozenset({
        PaymentStatus.PROCESSING.value,
        PaymentStatus.COMPLETED.value,
    })

    def __init__(
        self,
        store: DepositStore,
        locks: DepositLockManager,
        gateway: PaymentGateway,
        clock: Clock = get_naive_utc_now,
        timeout_seconds: Optional[float] = None,
        profile: Optional[str] = None,
        notifications=None,
    ):
        self.store = store
        self.locks = locks
        self.gateway = gateway
        self.clock = clock
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else Config.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        )
        self.profile = (profile or Config.PAYMENT_FLOW_PROFILE or GATEWAY_PROFILE).lower()
        if self.profile not in (GATEWAY_PROFILE, SIMPLE_PROFILE):
            raise ValueError(f"Unknown payment flow profile: {self.profile}")
        # Optional NotificationService, used for payment_failed events
        self.notifications = notifications

    async def _call_gateway(self, operation: str, func: Callable[..., Awaitable[Any]], *args) -> Any:
        try:
            return await asyncio.wait_for(func(*args), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"❌ GATEWAY_TIMEOUT: {operation} exceeded {self.timeout_seconds}s")
            raise PaymentGatewayError(f"{operation} timed out after {self.timeout_seconds}s", retryable=True)
        except PaymentGatewayError:
            raise
        except Exception as e:
            logger.error(f"❌ GATEWAY_ERROR: {operation}: {e}")
            raise PaymentGatewayError(f"{operation} failed: {e}")

    def _load(self, deposit_id: str) -> Deposit:
        deposit = self.store.get(deposit_id)
        if deposit is None:
            raise DepositNotFound(deposit_id)
        return deposit

    # ------------------------------------------------------------------
    # Deposit-level operations (caller holds the lock and stores the result)
    # ------------------------------------------------------------------

    async def hold(self, deposit: Deposit) -> Deposit:
        if deposit.payment_status != PaymentStatus.PENDING.value:
            raise InvalidState("Deposit payment has already been processed")

        # Gateway first: a rejected hold must leave the deposit untouched
        payment_ref = await self._call_gateway("create_hold", self.gateway.create_hold, deposit)

        now = self.clock()
        deposit.external_payment_ref = payment_ref
        deposit.update_status(DepositStatus.PENDING_PAYMENT, now=now)
        deposit.update_payment_status(PaymentStatus.PROCESSING, now=now)
        logger.info(f"💳 HOLD_INITIATED: deposit {deposit.id} ref={payment_ref}")
        return deposit

    async def capture(self, deposit: Deposit) -> Deposit:
        now = self.clock()
        if self.profile == SIMPLE_PROFILE:
            if deposit.payment_status != PaymentStatus.PROCESSING.value:
                raise InvalidState("Payment must be in processing status before capturing")
            deposit.update_payment_status(PaymentStatus.COMPLETED, now=now)
            deposit.update_status(DepositStatus.ACTIVE, now=now)
            logger.info(f"💳 PAYMENT_CAPTURED: deposit {deposit.id} (simple profile)")
            return deposit

        if deposit.payment_status != PaymentStatus.COMPLETED.value:
            raise InvalidState("Payment hold must be completed before capturing")

        if deposit.external_payment_ref:
            await self._call_gateway("capture", self.gateway.capture, deposit.external_payment_ref)
        deposit.update_payment_status(PaymentStatus.CAPTURED, now=self.clock())
        logger.info(f"💳 PAYMENT_CAPTURED: deposit {deposit.id} ref={deposit.external_payment_ref}")
        return deposit

    async def cancel(self, deposit: Deposit) -> Deposit:
        if deposit.payment_status not in self.CANCELLABLE_PAYMENT_STATUSES:
            raise InvalidState(
                f"No active hold to cancel (payment status is {deposit.payment_status})"
            )

        if deposit.external_payment_ref:
            await self._call_gateway("cancel", self.gateway.cancel, deposit.external_payment_ref)
        deposit.update_payment_status(PaymentStatus.CANCELLED, now=self.clock())
        logger.info(f"💳 HOLD_CANCELLED: deposit {deposit.id} ref={deposit.external_payment_ref}")
        return deposit

    async def refund(self, deposit: Deposit, reason: str = "expired_deposit", allow_retry: bool = False) -> bool:
        """
        Refund a completed or captured payment

        Failure never raises: payment status becomes refund_failed, which stays
        put until an admin intervenes (allow_retry=True, admin path only).
        """
        allowed = REFUNDABLE_PAYMENT_STATUSES
        if allow_retry:
            allowed = allowed | {PaymentStatus.REFUND_FAILED.value}
        if deposit.payment_status not in allowed:
            raise InvalidState("Payment must be completed before releasing")

        if not deposit.external_payment_ref:
            # Nothing was held at a gateway, so there is nothing to send back
            deposit.update_payment_status(PaymentStatus.REFUNDED, now=self.clock())
            logger.info(f"💸 REFUND_RECORDED: deposit {deposit.id} (no gateway payment)")
            return True

        try:
            result = await self._call_gateway(
                "refund", self.gateway.refund, deposit.external_payment_ref, reason
            )
        except PaymentGatewayError as e:
            deposit.update_payment_status(PaymentStatus.REFUND_FAILED, now=self.clock())
            logger.error(f"❌ REFUND_FAILED: deposit {deposit.id} ref={deposit.external_payment_ref}: {e}")
            return False

        deposit.update_payment_status(PaymentStatus.REFUNDED, now=self.clock())
        refund_id = result.get("id") if isinstance(result, dict) else None
        logger.info(f"💸 REFUND_PROCESSED: deposit {deposit.id} refund={refund_id}")
        return True

    # ------------------------------------------------------------------
    # Id-level operations
    # ------------------------------------------------------------------

    async def initiate_hold(self, deposit_id: str) -> Deposit:
        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            await self.hold(deposit)
            return self.store.put(deposit)

    async def capture_payment(self, deposit_id: str) -> Deposit:
        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            await self.capture(deposit)
            return self.store.put(deposit)

    async def cancel_hold(self, deposit_id: str) -> Deposit:
        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            await self.cancel(deposit)
            return self.store.put(deposit)

    async def refund_payment(self, deposit_id: str, reason: str = "release_requested") -> Deposit:
        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            await self.refund(deposit, reason=reason)
            return self.store.put(deposit)

    # ------------------------------------------------------------------
    # Asynchronous gateway events
    # ------------------------------------------------------------------

    async def _release_late_hold(self, deposit: Deposit, event_type: str) -> bool:
        """Cancel a hold that succeeded after the deposit reached a terminal status"""
        if deposit.external_payment_ref:
            try:
                await self._call_gateway("cancel", self.gateway.cancel, deposit.external_payment_ref)
            except PaymentGatewayError as e:
                logger.error(
                    f"❌ LATE_HOLD_RELEASE_FAILED: deposit {deposit.id} ref={deposit.external_payment_ref}: {e}"
                )
                return False

        deposit.update_payment_status(PaymentStatus.CANCELLED, now=self.clock())
        self.store.put(deposit)
        logger.warning(
            f"🚫 LATE_HOLD_RELEASED: {event_type} for {deposit.status} deposit {deposit.id}, "
            f"hold {deposit.external_payment_ref} cancelled"
        )
        return True

    async def handle_gateway_event(self, event: Dict[str, Any]) -> bool:
        """
        Map a gateway event onto the deposit primitives

        Returns True when a deposit was updated. Unknown event types and events
        for unknown deposits are logged and dropped. Events never reopen a
        terminal deposit and never move a payment out of a settled status; a
        hold that succeeds after the deposit closed is cancelled at the gateway.
        """
        event_type = event.get("type")
        data_object = (event.get("data") or {}).get("object") or {}
        deposit_id = (data_object.get("metadata") or {}).get("deposit_id")

        if event_type not in HOLD_SUCCEEDED_EVENTS + (
            PAYMENT_FAILED_EVENT, PAYMENT_CANCELED_EVENT, CAPTURE_SUCCEEDED_EVENT
        ):
            logger.info(f"Unhandled event type {event_type}")
            return False

        if not deposit_id:
            logger.warning(f"⚠️ GATEWAY_EVENT_DROPPED: {event_type} without deposit_id metadata")
            return False

        async with self.locks.lock(deposit_id):
            deposit = self.store.get(deposit_id)
            if deposit is None:
                logger.warning(f"⚠️ GATEWAY_EVENT_DROPPED: {event_type} for unknown deposit {deposit_id}")
                return False

            if deposit.payment_status in SETTLED_PAYMENT_STATUSES:
                logger.warning(
                    f"⚠️ GATEWAY_EVENT_IGNORED: {event_type} for deposit {deposit_id} "
                    f"with settled payment {deposit.payment_status}"
                )
                return False

            if not deposit.external_payment_ref and data_object.get("id"):
                deposit.external_payment_ref = data_object.get("payment_intent") or data_object.get("id")

            if event_type in HOLD_SUCCEEDED_EVENTS and deposit.is_terminal():
                return await self._release_late_hold(deposit, event_type)

            now = self.clock()
            notify_failure = False
            if event_type in HOLD_SUCCEEDED_EVENTS:
                deposit.update_payment_status(PaymentStatus.COMPLETED, now=now)
                deposit.update_status(DepositStatus.ACTIVE, now=now)
                logger.info(f"✅ GATEWAY_HOLD_SUCCEEDED: deposit {deposit_id} now active")
            elif event_type == PAYMENT_FAILED_EVENT:
                deposit.update_payment_status(PaymentStatus.FAILED, now=now)
                if not deposit.is_terminal():
                    deposit.update_status(DepositStatus.CANCELLED, now=now)
                    notify_failure = True
                logger.info(f"❌ GATEWAY_PAYMENT_FAILED: deposit {deposit_id} status={deposit.status}")
            elif event_type == PAYMENT_CANCELED_EVENT:
                deposit.update_payment_status(PaymentStatus.CANCELLED, now=now)
                logger.info(f"🚫 GATEWAY_PAYMENT_CANCELED: deposit {deposit_id}")
            else:
                deposit.update_payment_status(PaymentStatus.CAPTURED, now=now)
                logger.info(f"✅ GATEWAY_CAPTURE_SUCCEEDED: deposit {deposit_id}")

            deposit = self.store.put(deposit)

        if notify_failure and self.notifications is not None:
            preference = NOTIFICATION_PREFERENCE_KEYS[NotificationType.PAYMENT_FAILED.value]
            if deposit.should_receive_notification(preference):
                await self.notifications.send(deposit, NotificationType.PAYMENT_FAILED)

        return True
