"""
Safe Transit Deposit Engine - Schema and Domain Records
========================================================

Focused schema for the escrow deposit lifecycle:
- Deposit records (the single source of truth for status and payment status)
- Audit trail entries (append-only, reference deposits by id)
- Notification records (delivery attempts, reference deposits by id)

Deposits are SQLAlchemy models so the same class serves the volatile in-memory
store and the SQL-backed store. Audit and notification records are plain
dataclasses owned by their services.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Type

from sqlalchemy import Column, String, Numeric, DateTime, Text, JSON, Index
from sqlalchemy.orm import DeclarativeBase

from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidState


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DepositStatus(Enum):
    """Deposit lifecycle status"""
    CREATED = "created"
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(Enum):
    """Payment status of the funds behind a deposit"""
    PENDING = "pending"
    PROCESSING = "processing"      # Hold requested from the gateway
    COMPLETED = "completed"        # Hold succeeded, funds reserved
    CAPTURED = "captured"          # Hold converted into a transfer
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"  # Terminal until an admin intervenes


class AuditAction(Enum):
    """Closed set of audit trail actions"""
    STATUS_OVERRIDE = "status_override"
    PAYMENT_STATUS_OVERRIDE = "payment_status_override"
    MANUAL_RESTITUTION = "manual_restitution"
    MANUAL_CAPTURE = "manual_capture"
    MANUAL_CANCELLATION = "manual_cancellation"
    ADMIN_INTERVENTION = "admin_intervention"
    NOTIFICATION_SENT = "notification_sent"
    AUTO_EXPIRE = "auto_expire"
    AUTO_REFUND = "auto_refund"


class NotificationType(Enum):
    EXPIRED = "expired"
    EXPIRING_SOON = "expiring_soon"
    PAYMENT_FAILED = "payment_failed"
    TEST = "test"


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Statuses after which the scheduler never applies another automatic transition
TERMINAL_STATUSES = frozenset({
    DepositStatus.FULFILLED.value,
    DepositStatus.EXPIRED.value,
    DepositStatus.CANCELLED.value,
})

# Payment states that mean money has moved and must be returned on expiry
REFUNDABLE_PAYMENT_STATUSES = frozenset({
    PaymentStatus.COMPLETED.value,
    PaymentStatus.CAPTURED.value,
})

# Payment states a late gateway event must never move out of
SETTLED_PAYMENT_STATUSES = frozenset({
    PaymentStatus.REFUNDED.value,
    PaymentStatus.REFUND_FAILED.value,
    PaymentStatus.CANCELLED.value,
})

# Actions written by the system itself; every other action needs an actor and a reason
SYSTEM_AUDIT_ACTIONS = frozenset({
    AuditAction.NOTIFICATION_SENT.value,
    AuditAction.AUTO_EXPIRE.value,
    AuditAction.AUTO_REFUND.value,
})

SYSTEM_ACTOR = "system"

# Notification type -> preference key on the deposit
NOTIFICATION_PREFERENCE_KEYS = {
    NotificationType.EXPIRED.value: "expiration",
    NotificationType.EXPIRING_SOON.value: "expiring_soon",
    NotificationType.PAYMENT_FAILED.value: "payment_failed",
}

DEFAULT_NOTIFICATION_PREFERENCES = {
    "expiration": True,
    "expiring_soon": True,
    "payment_failed": True,
    "fulfillment": True,
}


def coerce_enum_value(enum_cls: Type[Enum], value: Any) -> str:
    """Return the string value of ``value`` in ``enum_cls`` or raise InvalidState"""
    if isinstance(value, enum_cls):
        return value.value
    allowed = [member.value for member in enum_cls]
    if isinstance(value, str) and value in allowed:
        return value
    raise InvalidState(
        f"Invalid {enum_cls.__name__}: {value!r}. Must be one of: {', '.join(allowed)}"
    )


# ============================================================================
# DEPOSITS
# ============================================================================

class Deposit(Base):
    """Escrow deposit binding funds to a requirement and a deadline"""
    __tablename__ = 'deposits'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    amount = Column(Numeric(18, 2), nullable=False)
    requirement = Column(Text, nullable=False)
    time_limit = Column(DateTime, nullable=False, index=True)

    creator_id = Column(String(64), nullable=True)
    receiver_id = Column(String(64), nullable=True)
    creator_email = Column(String(255), nullable=True)
    receiver_email = Column(String(255), nullable=True)

    status = Column(String(20), nullable=False, default=DepositStatus.CREATED.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    external_payment_ref = Column(String(255), nullable=True)

    notification_preferences = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_deposits_status_time_limit', 'status', 'time_limit'),
        Index('ix_deposits_payment_ref', 'external_payment_ref'),
    )

    # Permissive primitives: only the enum domain is enforced here, callers own
    # the decision of which transitions are legal in their context.
    def update_status(self, new_status, now: Optional[datetime] = None) -> None:
        self.status = coerce_enum_value(DepositStatus, new_status)
        self._touch(now)

    def update_payment_status(self, new_payment_status, now: Optional[datetime] = None) -> None:
        self.payment_status = coerce_enum_value(PaymentStatus, new_payment_status)
        self._touch(now)

    def update_notification_preferences(self, preferences: Dict[str, bool], now: Optional[datetime] = None) -> None:
        merged = dict(self.notification_preferences or {})
        merged.update({key: bool(value) for key, value in preferences.items()})
        self.notification_preferences = merged
        self._touch(now)

    def should_receive_notification(self, preference_key: str) -> bool:
        return (self.notification_preferences or {}).get(preference_key) is True

    def set_emails(self, creator_email: Optional[str], receiver_email: Optional[str], now: Optional[datetime] = None) -> None:
        self.creator_email = creator_email
        self.receiver_email = receiver_email
        self._touch(now)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _touch(self, now: Optional[datetime]) -> None:
        now = now or get_naive_utc_now()
        # updated_at never moves backwards, even if the clock does
        if self.updated_at is None or now > self.updated_at:
            self.updated_at = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "amount": str(self.amount) if self.amount is not None else None,
            "requirement": self.requirement,
            "time_limit": self.time_limit.isoformat() if self.time_limit else None,
            "creator_id": self.creator_id,
            "receiver_id": self.receiver_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "external_payment_ref": self.external_payment_ref,
            "creator_email": self.creator_email,
            "receiver_email": self.receiver_email,
            "notification_preferences": dict(self.notification_preferences or {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<Deposit {self.id} status={self.status} payment_status={self.payment_status}>"


# ============================================================================
# AUDIT & NOTIFICATION RECORDS
# ============================================================================

@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit trail entry capturing both status fields before and after"""

    deposit_id: str
    action: str
    previous_status: Optional[str]
    new_status: Optional[str]
    previous_payment_status: Optional[str]
    new_payment_status: Optional[str]
    actor: str
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=get_naive_utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class NotificationRecord:
    """A single notification delivery attempt"""

    deposit_id: str
    type: str
    recipient: str
    subject: str
    message: str
    recipient_id: Optional[str] = None
    status: str = NotificationStatus.PENDING.value
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=get_naive_utc_now)
    archived_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def mark_sent(self) -> None:
        self.status = NotificationStatus.SENT.value
        self.error = None

    def mark_failed(self, error: str) -> None:
        self.status = NotificationStatus.FAILED.value
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["archived_at"] = self.archived_at.isoformat() if self.archived_at else None
        if self.status != NotificationStatus.FAILED.value:
            data.pop("error")
        return data
