"""
Admin Service - operator interventions on deposits

Overrides bypass the lifecycle guards but every change is paired with exactly
one audit entry naming the admin and the reason.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from models import (
    AuditAction,
    Deposit,
    DepositStatus,
    PaymentStatus,
    coerce_enum_value,
)
from services.audit_trail_service import AuditTrailService
from services.deposit_store import DepositStore
from services.notification_service import NotificationService
from services.payment_orchestrator import PaymentOrchestrator
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.deposit_locks import DepositLockManager
from utils.exceptions import DepositNotFound, InvalidInput, InvalidState

logger = logging.getLogger(__name__)


def _require_admin(admin_id: Optional[str], reason: Optional[str]) -> None:
    if not admin_id or not str(admin_id).strip() or not reason or not str(reason).strip():
        raise InvalidInput("Admin ID and reason are required")


def _paginate(limit: int, offset: int):
    return max(0, int(limit)), max(0, int(offset))


class AdminService:
    """Admin dashboard operations"""

    RECENT_DEPOSITS = 5

    def __init__(
        self,
        store: DepositStore,
        locks: DepositLockManager,
        audit_trail: AuditTrailService,
        payments: PaymentOrchestrator,
        notifications: NotificationService,
        clock: Clock = get_naive_utc_now,
    ):
        self.store = store
        self.locks = locks
        self.audit_trail = audit_trail
        self.payments = payments
        self.notifications = notifications
        self.clock = clock

    def _load(self, deposit_id: str) -> Deposit:
        deposit = self.store.get(deposit_id)
        if deposit is None:
            raise DepositNotFound(deposit_id)
        return deposit

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_deposits(
        self,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Deposits newest first, filtered by status and payment status"""
        limit, offset = _paginate(limit, offset)
        deposits = self.store.scan_all()
        if status:
            deposits = [d for d in deposits if d.status == status]
        if payment_status:
            deposits = [d for d in deposits if d.payment_status == payment_status]
        deposits.sort(key=lambda d: d.created_at, reverse=True)

        return {
            "deposits": [d.to_dict() for d in deposits[offset:offset + limit]],
            "total": len(deposits),
            "limit": limit,
            "offset": offset,
        }

    def get_audit_logs(self, deposit_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        page = self.audit_trail.query(deposit_id=deposit_id, limit=limit, offset=offset)
        page["audit_logs"] = [entry.to_dict() for entry in page["audit_logs"]]
        return page

    def get_notifications(self, limit: int = 50, offset: int = 0, deposit_id: Optional[str] = None) -> Dict[str, Any]:
        page = self.notifications.get_all(limit=limit, offset=offset, deposit_id=deposit_id)
        page["notifications"] = [record.to_dict() for record in page["notifications"]]
        return page

    def stats(self) -> Dict[str, Any]:
        """Dashboard statistics over every deposit"""
        deposits = self.store.scan_all()
        status_counts: Dict[str, int] = {}
        payment_status_counts: Dict[str, int] = {}
        total_amount = Decimal("0.00")

        for deposit in deposits:
            status_counts[deposit.status] = status_counts.get(deposit.status, 0) + 1
            payment_status_counts[deposit.payment_status] = payment_status_counts.get(deposit.payment_status, 0) + 1
            total_amount += Decimal(deposit.amount)

        recent = sorted(deposits, key=lambda d: d.created_at, reverse=True)[:self.RECENT_DEPOSITS]
        return {
            "total_deposits": len(deposits),
            "status_counts": status_counts,
            "payment_status_counts": payment_status_counts,
            "total_amount": total_amount,
            "recent_deposits": [d.to_dict() for d in recent],
        }

    # ------------------------------------------------------------------
    # Interventions
    # ------------------------------------------------------------------

    async def override(
        self,
        deposit_id: str,
        admin_id: str,
        reason: str,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Force status and/or payment status, bypassing the lifecycle guards

        Raises:
            InvalidInput: missing admin/reason, or neither field given
            InvalidState: a value outside its enum (nothing is changed)
            DepositNotFound: unknown id
        """
        _require_admin(admin_id, reason)
        if status is None and payment_status is None:
            raise InvalidInput("status or payment_status is required")

        new_status = coerce_enum_value(DepositStatus, status) if status is not None else None
        new_payment_status = (
            coerce_enum_value(PaymentStatus, payment_status) if payment_status is not None else None
        )

        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            previous_status = deposit.status
            previous_payment_status = deposit.payment_status
            now = self.clock()

            if new_status is not None:
                deposit.update_status(new_status, now=now)
            if new_payment_status is not None:
                deposit.update_payment_status(new_payment_status, now=now)
            deposit = self.store.put(deposit)

            action = AuditAction.STATUS_OVERRIDE if new_status is not None else AuditAction.PAYMENT_STATUS_OVERRIDE
            entry = self.audit_trail.log_transition(
                deposit,
                action,
                previous_status=previous_status,
                previous_payment_status=previous_payment_status,
                actor=admin_id,
                reason=reason,
                metadata=metadata,
            )

        logger.warning(
            f"🛠️ ADMIN_OVERRIDE: {admin_id} set deposit {deposit_id} "
            f"status={deposit.status} payment_status={deposit.payment_status}"
        )
        return {"deposit": deposit, "audit_log": entry}

    async def manual_restitution(
        self,
        deposit_id: str,
        admin_id: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Return funds to the creator: release an open hold, refund a captured
        payment, and cancel an active or pending deposit
        """
        _require_admin(admin_id, reason)

        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            previous_status = deposit.status
            previous_payment_status = deposit.payment_status

            if previous_payment_status in PaymentOrchestrator.CANCELLABLE_PAYMENT_STATUSES:
                await self.payments.cancel(deposit)
            elif previous_payment_status == PaymentStatus.CAPTURED.value:
                await self.payments.refund(deposit, reason="manual_restitution")
            else:
                deposit.update_payment_status(PaymentStatus.CANCELLED, now=self.clock())

            if deposit.status in (DepositStatus.ACTIVE.value, DepositStatus.PENDING_PAYMENT.value):
                deposit.update_status(DepositStatus.CANCELLED, now=self.clock())
            deposit = self.store.put(deposit)

            entry = self.audit_trail.log_transition(
                deposit,
                AuditAction.MANUAL_RESTITUTION,
                previous_status=previous_status,
                previous_payment_status=previous_payment_status,
                actor=admin_id,
                reason=reason,
                metadata=metadata,
            )

        logger.warning(f"💸 MANUAL_RESTITUTION: {admin_id} restituted deposit {deposit_id} → {deposit.payment_status}")
        return {"deposit": deposit, "audit_log": entry}

    async def manual_capture(
        self,
        deposit_id: str,
        admin_id: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        _require_admin(admin_id, reason)

        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            previous_status = deposit.status
            previous_payment_status = deposit.payment_status

            await self.payments.capture(deposit)
            deposit = self.store.put(deposit)

            entry = self.audit_trail.log_transition(
                deposit,
                AuditAction.MANUAL_CAPTURE,
                previous_status=previous_status,
                previous_payment_status=previous_payment_status,
                actor=admin_id,
                reason=reason,
                metadata=metadata,
            )

        logger.info(f"💳 MANUAL_CAPTURE: {admin_id} captured deposit {deposit_id}")
        return {"deposit": deposit, "audit_log": entry}

    async def manual_cancellation(
        self,
        deposit_id: str,
        admin_id: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Release an open hold and cancel the deposit"""
        _require_admin(admin_id, reason)

        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            previous_status = deposit.status
            previous_payment_status = deposit.payment_status

            if deposit.is_terminal():
                raise InvalidState(f"Cannot cancel: deposit is {deposit.status}")

            if previous_payment_status in PaymentOrchestrator.CANCELLABLE_PAYMENT_STATUSES:
                await self.payments.cancel(deposit)
            deposit.update_status(DepositStatus.CANCELLED, now=self.clock())
            deposit = self.store.put(deposit)

            entry = self.audit_trail.log_transition(
                deposit,
                AuditAction.MANUAL_CANCELLATION,
                previous_status=previous_status,
                previous_payment_status=previous_payment_status,
                actor=admin_id,
                reason=reason,
                metadata=metadata,
            )

        logger.warning(f"🚫 MANUAL_CANCELLATION: {admin_id} cancelled deposit {deposit_id}")
        return {"deposit": deposit, "audit_log": entry}

    async def retry_refund(
        self,
        deposit_id: str,
        admin_id: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Retry a refund left in refund_failed"""
        _require_admin(admin_id, reason)

        async with self.locks.lock(deposit_id):
            deposit = self._load(deposit_id)
            if deposit.payment_status != PaymentStatus.REFUND_FAILED.value:
                raise InvalidState(
                    f"Only failed refunds can be retried (payment status is {deposit.payment_status})"
                )
            previous_status = deposit.status
            previous_payment_status = deposit.payment_status

            refunded = await self.payments.refund(deposit, reason="admin_retry", allow_retry=True)
            deposit = self.store.put(deposit)

            entry = self.audit_trail.log_transition(
                deposit,
                AuditAction.ADMIN_INTERVENTION,
                previous_status=previous_status,
                previous_payment_status=previous_payment_status,
                actor=admin_id,
                reason=reason,
                metadata={**(metadata or {}), "operation": "retry_refund", "refunded": refunded},
            )

        if refunded:
            logger.info(f"✅ REFUND_RETRY_SUCCEEDED: deposit {deposit_id} by {admin_id}")
        else:
            logger.error(f"❌ REFUND_RETRY_FAILED: deposit {deposit_id} by {admin_id}")
        return {"deposit": deposit, "audit_log": entry, "refunded": refunded}

    def pending_interventions(self) -> List[Deposit]:
        """Deposits whose refund failed and wait for an admin"""
        return [d for d in self.store.scan_all() if d.payment_status == PaymentStatus.REFUND_FAILED.value]
