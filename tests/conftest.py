"""
Shared fixtures for the deposit engine test suite

Key Components:
1. FrozenClock - deterministic, manually advanced time source
2. FakeGateway - in-process payment gateway with controllable failures and delays
3. RecordingTransport - message transport that records deliveries
4. Wired DepositEngine on the in-memory store
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from models import Deposit, DepositStatus, PaymentStatus, DEFAULT_NOTIFICATION_PREFERENCES
from services.deposit_engine import DepositEngine
from services.deposit_store import InMemoryDepositStore
from services.email import MessageTransport
from services.payment_gateway import PaymentGateway
from utils.exceptions import PaymentGatewayError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

START_TIME = datetime(2024, 3, 1, 12, 0, 0)


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGateway):
    """Gateway double; set fail_on / delay_seconds per operation"""

    name = "fake"

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_on = set()
        self.delay_seconds: Dict[str, float] = {}

    async def _maybe_fail(self, operation: str) -> None:
        delay = self.delay_seconds.get(operation)
        if delay:
            await asyncio.sleep(delay)
        if operation in self.fail_on:
            raise PaymentGatewayError(f"{operation} rejected", status_code=402)

    async def create_hold(self, deposit: Deposit) -> str:
        self.calls.append(("create_hold", deposit.id))
        await self._maybe_fail("create_hold")
        return "pi_" + uuid.uuid4().hex[:16]

    async def capture(self, payment_ref: str) -> Dict[str, Any]:
        self.calls.append(("capture", payment_ref))
        await self._maybe_fail("capture")
        return {"id": payment_ref, "status": "succeeded"}

    async def cancel(self, payment_ref: str) -> Dict[str, Any]:
        self.calls.append(("cancel", payment_ref))
        await self._maybe_fail("cancel")
        return {"id": payment_ref, "status": "canceled"}

    async def refund(self, payment_ref: Optional[str], reason: str = "expired_deposit") -> Dict[str, Any]:
        self.calls.append(("refund", payment_ref))
        await self._maybe_fail("refund")
        return {"id": "re_" + uuid.uuid4().hex[:16], "status": "succeeded"}

    def count(self, operation: str) -> int:
        return len([c for c in self.calls if c[0] == operation])


class RecordingTransport(MessageTransport):
    """Transport double recording every delivery"""

    def __init__(self, is_live: bool = True, succeed: bool = True):
        self.is_live = is_live
        self.succeed = succeed
        self.raise_error: Optional[Exception] = None
        self.sent: List[Dict[str, Any]] = []

    async def deliver(self, recipient: str, subject: str, body: str, html: Optional[str] = None) -> bool:
        if self.raise_error is not None:
            raise self.raise_error
        self.sent.append({"recipient": recipient, "subject": subject, "body": body, "html": html})
        return self.succeed


def make_deposit(
    clock: FrozenClock,
    time_limit: Optional[datetime] = None,
    status: str = DepositStatus.CREATED.value,
    payment_status: str = PaymentStatus.PENDING.value,
    amount: str = "100.00",
    creator_email: Optional[str] = "creator@example.com",
    payment_ref: Optional[str] = None,
    preferences: Optional[Dict[str, bool]] = None,
) -> Deposit:
    """Build a deposit directly, bypassing creation validation"""
    now = clock()
    return Deposit(
        id=str(uuid.uuid4()),
        amount=Decimal(amount),
        requirement="Deliver the package",
        time_limit=time_limit or now + timedelta(hours=2),
        creator_id="creator-1",
        receiver_id="receiver-1",
        creator_email=creator_email,
        receiver_email=None,
        status=status,
        payment_status=payment_status,
        external_payment_ref=payment_ref,
        notification_preferences={**DEFAULT_NOTIFICATION_PREFERENCES, **(preferences or {})},
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def store():
    return InMemoryDepositStore()


@pytest.fixture
def engine(store, gateway, transport, clock):
    return DepositEngine(
        store=store,
        gateway=gateway,
        transport=transport,
        clock=clock,
        payment_profile="gateway",
        lock_timeout_seconds=1.0,
        gateway_timeout_seconds=0.5,
        send_delay_seconds=0,
        webhook_secret="",
    )


@pytest.fixture
def seed(store, clock):
    """Store a deposit built with make_deposit and return it"""
    def _seed(**kwargs) -> Deposit:
        deposit = make_deposit(clock, **kwargs)
        store.put(deposit)
        return deposit
    return _seed
