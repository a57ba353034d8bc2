"""
Deposit Expiry Service - time-driven state transitions
Handles expired deposit detection, refunds of held funds, expiring-soon alerts and
notification retention. The reconciliation scheduler calls the process_* methods;
the deposit service reuses expire_locked() when a fulfil attempt arrives late.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from config import Config
from models import (
    AuditAction,
    Deposit,
    DepositStatus,
    NotificationType,
    NOTIFICATION_PREFERENCE_KEYS,
    REFUNDABLE_PAYMENT_STATUSES,
)
from services.audit_trail_service import AuditTrailService
from services.deposit_store import DepositStore
from services.notification_service import NotificationService
from services.payment_orchestrator import PaymentOrchestrator
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.deposit_locks import DepositLockManager

logger = logging.getLogger(__name__)


class DepositExpiryService:
    """Expiry, expiring-soon and retention sweeps over the deposit store"""

    def __init__(
        self,
        store: DepositStore,
        locks: DepositLockManager,
        audit_trail: AuditTrailService,
        notifications: NotificationService,
        payments: PaymentOrchestrator,
        clock: Clock = get_naive_utc_now,
        expiring_soon_window: Optional[timedelta] = None,
        suppression_window: Optional[timedelta] = None,
        retention: Optional[timedelta] = None,
    ):
        self.store = store
        self.locks = locks
        self.audit_trail = audit_trail
        self.notifications = notifications
        self.payments = payments
        self.clock = clock
        self.expiring_soon_window = expiring_soon_window or timedelta(minutes=Config.EXPIRING_SOON_WINDOW_MINUTES)
        self.suppression_window = suppression_window or timedelta(hours=Config.NOTIFICATION_SUPPRESSION_HOURS)
        self.retention = retention or timedelta(days=Config.NOTIFICATION_RETENTION_DAYS)
        # Created on first use so it binds to the running loop
        self._expiring_soon_lock: Optional[asyncio.Lock] = None

    @staticmethod
    def is_past_deadline(deposit: Deposit, now: datetime) -> bool:
        """Past its time limit and not yet in a terminal status"""
        return deposit.time_limit < now and not deposit.is_terminal()

    # ------------------------------------------------------------------
    # Single deposit
    # ------------------------------------------------------------------

    async def expire_locked(self, deposit: Deposit) -> Optional[Dict[str, Any]]:
        """
        Expire one deposit whose lock the caller holds

        Writes one auto_expire entry and, when funds had moved, one auto_refund
        entry. Returns None when the deposit is no longer due.
        """
        now = self.clock()
        if not self.is_past_deadline(deposit, now):
            return None

        previous_status = deposit.status
        previous_payment_status = deposit.payment_status

        deposit.update_status(DepositStatus.EXPIRED, now=now)
        self.store.put(deposit)
        self.audit_trail.log_transition(
            deposit,
            AuditAction.AUTO_EXPIRE,
            previous_status=previous_status,
            previous_payment_status=previous_payment_status,
            reason="Time limit passed before fulfilment",
            metadata={"time_limit": deposit.time_limit.isoformat(), "expired_at": now.isoformat()},
        )
        logger.info(f"⏰ AUTO_EXPIRE: Deposit {deposit.id} {previous_status} → expired")

        outcome = {
            "deposit_id": deposit.id,
            "previous_status": previous_status,
            "refund_attempted": False,
            "refund_succeeded": None,
        }

        if previous_payment_status in REFUNDABLE_PAYMENT_STATUSES:
            outcome["refund_attempted"] = True
            refunded = await self.payments.refund(deposit, reason="expired_deposit")
            outcome["refund_succeeded"] = refunded
            self.store.put(deposit)
            self.audit_trail.log_transition(
                deposit,
                AuditAction.AUTO_REFUND,
                previous_status=deposit.status,
                previous_payment_status=previous_payment_status,
                reason="Refund of held funds for expired deposit",
                metadata={
                    "payment_ref": deposit.external_payment_ref,
                    "outcome": deposit.payment_status,
                },
            )

        return outcome

    async def notify_expired(self, deposit: Deposit) -> Optional[Dict[str, Any]]:
        preference = NOTIFICATION_PREFERENCE_KEYS[NotificationType.EXPIRED.value]
        if not deposit.should_receive_notification(preference):
            logger.info(f"🔕 NOTIFICATION_OPTED_OUT: expired for deposit {deposit.id}")
            return None
        return await self.notifications.send(deposit, NotificationType.EXPIRED)

    async def expire(self, deposit_id: str) -> Optional[Dict[str, Any]]:
        """Lock, re-check and expire one deposit, then notify outside the lock"""
        async with self.locks.lock(deposit_id):
            deposit = self.store.get(deposit_id)
            if deposit is None:
                return None
            outcome = await self.expire_locked(deposit)

        if outcome is not None:
            result = await self.notify_expired(deposit)
            outcome["notification_status"] = result["status"] if result else None
        return outcome

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def process_expired_deposits(self) -> Dict[str, Any]:
        """
        Expire every non-terminal deposit past its time limit
        Returns: {'processed': int, 'expired_deposits': [...], 'refunds_failed': int, 'errors': [...]}
        """
        results = {
            "processed": 0,
            "expired_deposits": [],
            "refunds_failed": 0,
            "errors": [],
        }

        now = self.clock()
        candidates = [d for d in self.store.scan_all() if self.is_past_deadline(d, now)]
        if candidates:
            logger.info(f"🔍 EXPIRED_SWEEP: Found {len(candidates)} expired deposits to process")

        for candidate in candidates:
            try:
                outcome = await self.expire(candidate.id)
                if outcome is None:
                    continue
                results["processed"] += 1
                results["expired_deposits"].append(outcome)
                if outcome["refund_attempted"] and not outcome["refund_succeeded"]:
                    results["refunds_failed"] += 1
            except Exception as e:
                logger.error(f"❌ EXPIRED_SWEEP_ERROR: deposit {candidate.id}: {e}")
                results["errors"].append(f"Deposit {candidate.id}: {e}")

        if results["processed"]:
            logger.info(
                f"✅ EXPIRED_SWEEP_COMPLETE: {results['processed']} expired, "
                f"{results['refunds_failed']} refunds failed, {len(results['errors'])} errors"
            )
        return results

    def find_expiring_soon(self) -> List[Deposit]:
        now = self.clock()
        horizon = now + self.expiring_soon_window
        return [
            deposit for deposit in self.store.scan_all()
            if deposit.status == DepositStatus.CREATED.value
            and now < deposit.time_limit <= horizon
            and not self.notifications.has_recent_notification(
                deposit.id, NotificationType.EXPIRING_SOON, self.suppression_window
            )
        ]

    async def process_expiring_soon_deposits(self) -> Dict[str, Any]:
        """
        Alert creators of deposits about to expire, at most once per suppression window
        Overlapping runs are serialized, so a second run only selects deposits the
        first one did not alert.
        Returns: {'processed': int, 'sent': int, 'failed': int, 'skipped': int, 'errors': [...]}
        """
        if self._expiring_soon_lock is None:
            self._expiring_soon_lock = asyncio.Lock()
        async with self._expiring_soon_lock:
            return await self._alert_expiring_soon()

    async def _alert_expiring_soon(self) -> Dict[str, Any]:
        results = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0, "errors": []}

        preference = NOTIFICATION_PREFERENCE_KEYS[NotificationType.EXPIRING_SOON.value]
        due = []
        for deposit in self.find_expiring_soon():
            if deposit.should_receive_notification(preference):
                due.append(deposit)
            else:
                results["skipped"] += 1

        if not due:
            return results

        logger.info(f"🔔 EXPIRING_SOON_SWEEP: Found {len(due)} deposits expiring soon")
        try:
            sent = await self.notifications.send_many(due, NotificationType.EXPIRING_SOON)
        except Exception as e:
            logger.error(f"❌ EXPIRING_SOON_SWEEP_ERROR: {e}")
            results["errors"].append(str(e))
            return results

        results["processed"] = len(sent)
        results["sent"] = len([r for r in sent if r["success"]])
        results["failed"] = len(sent) - results["sent"]
        logger.info(f"✅ EXPIRING_SOON_SWEEP_COMPLETE: Sent {results['sent']} expiring soon notifications")
        return results

    async def cleanup_old_notifications(self) -> Dict[str, Any]:
        """Archive notification records past retention; audit entries are never touched"""
        cutoff = self.clock() - self.retention
        archived = self.notifications.archive_older_than(cutoff)
        if archived:
            logger.info(f"🧹 NOTIFICATION_CLEANUP: Archived {len(archived)} notifications older than {cutoff.isoformat()}")
        return {"processed": len(archived), "archived_ids": [n.id for n in archived], "errors": []}
