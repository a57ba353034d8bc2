"""
Deposit Notification Service
Builds, delivers and records notification attempts for deposits. Delivery goes
through a pluggable transport; failures are recorded on the notification record
instead of being raised to the caller.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from config import Config
from models import (
    AuditAction,
    Deposit,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
)
from services.audit_trail_service import AuditTrailService
from services.email import ConsoleTransport, MessageTransport
from utils.datetime_helpers import Clock, format_timestamp, get_naive_utc_now

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Centralized notification dispatcher for deposit participants

    Every successful send is paired with one notification_sent audit entry.
    """

    def __init__(
        self,
        audit_trail: AuditTrailService,
        transport: Optional[MessageTransport] = None,
        clock: Clock = get_naive_utc_now,
        send_delay_seconds: Optional[float] = None,
    ):
        self.audit_trail = audit_trail
        self.transport = transport
        self.fallback_transport = ConsoleTransport()
        self.clock = clock
        self.send_delay_seconds = (
            send_delay_seconds if send_delay_seconds is not None else Config.NOTIFICATION_SEND_DELAY_SECONDS
        )
        self._notifications: Dict[str, NotificationRecord] = {}
        self._mutex = threading.Lock()

    @property
    def has_live_transport(self) -> bool:
        return self.transport is not None and self.transport.is_live

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def _format_currency(self, amount) -> str:
        if amount is None:
            return "$0.00"
        return f"${Decimal(str(amount)):,.2f}"

    def _short_id(self, deposit: Deposit) -> str:
        return f"{deposit.id[:8]}..."

    def get_subject(self, notification_type: str, deposit: Deposit) -> str:
        platform = Config.PLATFORM_NAME
        short_id = self._short_id(deposit)
        if notification_type == NotificationType.EXPIRED.value:
            return f"{platform}: Deposit {short_id} Has Expired"
        if notification_type == NotificationType.EXPIRING_SOON.value:
            return f"{platform}: Deposit {short_id} Expires Soon"
        if notification_type == NotificationType.PAYMENT_FAILED.value:
            return f"{platform}: Payment Failed for Deposit {short_id}"
        return f"{platform}: Notification for Deposit {short_id}"

    def get_message(self, notification_type: str, deposit: Deposit) -> str:
        amount = self._format_currency(deposit.amount)
        short_id = self._short_id(deposit)
        time_limit = format_timestamp(deposit.time_limit)

        if notification_type == NotificationType.EXPIRED.value:
            return (
                f"Your deposit of {amount} (ID: {short_id}) has expired as of {time_limit}. "
                f"The deposit status has been automatically updated to 'expired'. "
                f"If you believe this is an error, please contact support."
            )
        if notification_type == NotificationType.EXPIRING_SOON.value:
            return (
                f"Your deposit of {amount} (ID: {short_id}) will expire soon. "
                f"The time limit is {time_limit}. Please ensure the requirements are "
                f"fulfilled before expiration to avoid automatic cancellation."
            )
        if notification_type == NotificationType.PAYMENT_FAILED.value:
            return (
                f"The payment for your deposit of {amount} (ID: {short_id}) has failed. "
                f"Please update your payment information or contact support to resolve this issue."
            )
        return f"This is a notification regarding your deposit of {amount} (ID: {short_id})."

    def _format_html_message(self, record: NotificationRecord) -> str:
        """Wrap a notification in the platform's HTML email layout"""
        platform = Config.PLATFORM_NAME
        return f"""
    <html>
    <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
        <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
            <h2 style="color: #ffffff; background: #667eea; padding: 20px; text-align: center;">
                {platform}
            </h2>
            <div style="background: #f9f9f9; padding: 20px; border-radius: 5px; margin: 20px 0;">
                <h3>{record.subject}</h3>
                <p>{record.message}</p>
                <p><strong>Deposit ID:</strong> {record.deposit_id}</p>
                <p><strong>Timestamp:</strong> {format_timestamp(record.timestamp)}</p>
                <a href="{Config.WEBAPP_URL}" style="display: inline-block; background: #667eea; color: white; padding: 12px 24px; text-decoration: none; border-radius: 5px;">View Your Deposits</a>
            </div>
            <p style="color: #7f8c8d; font-size: 12px; margin-top: 30px;">
                This is an automated message from {platform}. Please do not reply to this email.
            </p>
        </div>
    </body>
    </html>
    """

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, deposit: Deposit, notification_type: str) -> Dict[str, Any]:
        """
        Build, deliver and record one notification

        Returns: {'success': bool, 'status': str, 'record': NotificationRecord,
                  'audit_log': AuditLogEntry | None, 'error': str | None}
        """
        if isinstance(notification_type, NotificationType):
            notification_type = notification_type.value

        recipient = deposit.creator_email or Config.UNKNOWN_RECIPIENT
        record = NotificationRecord(
            deposit_id=deposit.id,
            type=notification_type,
            recipient=recipient,
            recipient_id=deposit.creator_id,
            subject=self.get_subject(notification_type, deposit),
            message=self.get_message(notification_type, deposit),
            timestamp=self.clock(),
        )

        use_transport = self.transport is not None and recipient != Config.UNKNOWN_RECIPIENT
        transport = self.transport if use_transport else self.fallback_transport

        try:
            delivered = await transport.deliver(
                recipient,
                record.subject,
                record.message,
                html=self._format_html_message(record),
            )
            if not delivered:
                raise RuntimeError("transport reported delivery failure")
        except Exception as e:
            record.mark_failed(str(e))
            self._store(record)
            logger.error(
                f"❌ NOTIFICATION_FAILED: {notification_type} for deposit {deposit.id} to {recipient}: {e}"
            )
            return {"success": False, "status": record.status, "record": record, "audit_log": None, "error": str(e)}

        record.mark_sent()
        self._store(record)

        audit_log = self.audit_trail.log_transition(
            deposit,
            AuditAction.NOTIFICATION_SENT,
            previous_status=deposit.status,
            previous_payment_status=deposit.payment_status,
            reason=f"Automated {notification_type} notification sent",
            metadata={
                "notification_id": record.id,
                "notification_type": notification_type,
                "recipient": recipient,
            },
        )

        logger.info(f"✅ NOTIFICATION_SENT: {notification_type} for deposit {deposit.id} to {recipient}")
        return {"success": True, "status": record.status, "record": record, "audit_log": audit_log, "error": None}

    async def send_many(self, deposits: Iterable[Deposit], notification_type: str) -> List[Dict[str, Any]]:
        """Send sequentially, pacing between sends when a live transport is configured"""
        results = []
        deposits = list(deposits)
        for index, deposit in enumerate(deposits):
            results.append(await self.send(deposit, notification_type))

            if self.has_live_transport and self.send_delay_seconds > 0 and index < len(deposits) - 1:
                await asyncio.sleep(self.send_delay_seconds)
        return results

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _store(self, record: NotificationRecord) -> None:
        with self._mutex:
            self._notifications[record.id] = record

    def _snapshot(self) -> List[NotificationRecord]:
        with self._mutex:
            return list(self._notifications.values())

    def history(self, deposit_id: str) -> List[NotificationRecord]:
        """Notifications of one deposit, newest first"""
        records = [n for n in self._snapshot() if n.deposit_id == deposit_id]
        return sorted(records, key=lambda n: n.timestamp, reverse=True)

    def get_all(self, limit: int = 50, offset: int = 0, deposit_id: Optional[str] = None) -> Dict[str, Any]:
        """Paginated list of non-archived notifications, newest first, optionally for one deposit"""
        limit = max(0, int(limit))
        offset = max(0, int(offset))
        records = sorted(
            (
                n for n in self._snapshot()
                if n.archived_at is None and (deposit_id is None or n.deposit_id == deposit_id)
            ),
            key=lambda n: n.timestamp,
            reverse=True,
        )
        return {
            "notifications": records[offset:offset + limit],
            "total": len(records),
            "limit": limit,
            "offset": offset,
        }

    def has_recent_notification(self, deposit_id: str, notification_type: str, window: timedelta) -> bool:
        """True iff a sent notification of this type exists within ``window`` of now"""
        if isinstance(notification_type, NotificationType):
            notification_type = notification_type.value
        now = self.clock()
        return any(
            n.type == notification_type
            and n.status == NotificationStatus.SENT.value
            and now - n.timestamp < window
            for n in self.history(deposit_id)
        )

    def archive_older_than(self, cutoff: datetime) -> List[NotificationRecord]:
        """Logically remove notifications older than ``cutoff``; returns the archived records"""
        now = self.clock()
        archived = []
        with self._mutex:
            for record in self._notifications.values():
                if record.archived_at is None and record.timestamp < cutoff:
                    record.archived_at = now
                    archived.append(record)
        return archived
