"""
Deposit Service - creation, lookup and fulfilment of escrow deposits

The transition primitives here only enforce the enum domains. Which transition
is legal in which situation is decided by the caller (fulfil below, the payment
orchestrator, the expiry sweep, admin overrides).
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Union

from models import (
    DEFAULT_NOTIFICATION_PREFERENCES,
    Deposit,
    DepositStatus,
    PaymentStatus,
)
from services.deposit_expiry_service import DepositExpiryService
from services.deposit_store import DepositStore
from utils.datetime_helpers import Clock, get_naive_utc_now, parse_timestamp
from utils.deposit_locks import DepositLockManager
from utils.exceptions import DepositNotFound, InvalidInput, InvalidState
from utils.validators import normalize_optional_email, normalize_requirement, parse_amount

logger = logging.getLogger(__name__)


class DepositService:
    """Deposit lifecycle operations exposed to request handlers"""

    def __init__(
        self,
        store: DepositStore,
        locks: DepositLockManager,
        expiry: DepositExpiryService,
        clock: Clock = get_naive_utc_now,
    ):
        self.store = store
        self.locks = locks
        self.expiry = expiry
        self.clock = clock

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def transition_status(self, deposit: Deposit, new_status: Union[str, DepositStatus]) -> Deposit:
        """Apply ``new_status`` unconditionally; InvalidState if outside the enum"""
        deposit.update_status(new_status, now=self.clock())
        return deposit

    def transition_payment_status(self, deposit: Deposit, new_payment_status: Union[str, PaymentStatus]) -> Deposit:
        deposit.update_payment_status(new_payment_status, now=self.clock())
        return deposit

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(
        self,
        amount,
        requirement: str,
        time_limit: Union[str, datetime],
        creator_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
        creator_email: Optional[str] = None,
        receiver_email: Optional[str] = None,
        notification_preferences: Optional[Dict[str, bool]] = None,
    ) -> Deposit:
        """
        Validate and store a new deposit

        Raises:
            InvalidInput: amount <= 0, requirement empty or too long, time limit
                not strictly in the future, or a malformed email
        """
        now = self.clock()

        parsed_amount = parse_amount(amount)
        normalized_requirement = normalize_requirement(requirement)

        parsed_time_limit = parse_timestamp(time_limit)
        if parsed_time_limit is None:
            raise InvalidInput("Time limit must be a valid ISO8601 timestamp", field="time_limit")
        if parsed_time_limit <= now:
            raise InvalidInput("Time limit must be in the future", field="time_limit")

        creator_email = normalize_optional_email(creator_email, "creator_email")
        receiver_email = normalize_optional_email(receiver_email, "receiver_email")

        preferences = dict(DEFAULT_NOTIFICATION_PREFERENCES)
        if notification_preferences:
            preferences.update({key: bool(value) for key, value in notification_preferences.items()})

        deposit = Deposit(
            id=str(uuid.uuid4()),
            amount=parsed_amount,
            requirement=normalized_requirement,
            time_limit=parsed_time_limit,
            creator_id=creator_id,
            receiver_id=receiver_id,
            creator_email=creator_email,
            receiver_email=receiver_email,
            status=DepositStatus.CREATED.value,
            payment_status=PaymentStatus.PENDING.value,
            notification_preferences=preferences,
            created_at=now,
            updated_at=now,
        )
        self.store.put(deposit)

        logger.info(f"✅ DEPOSIT_CREATED: {deposit.id} amount={parsed_amount} time_limit={parsed_time_limit.isoformat()}")
        return deposit

    async def get(self, deposit_id: str) -> Deposit:
        """Fetch a deposit, expiring it first if its time limit has passed"""
        deposit = self.store.get(deposit_id)
        if deposit is None:
            raise DepositNotFound(deposit_id)

        if self.expiry.is_past_deadline(deposit, self.clock()):
            await self.expiry.expire(deposit_id)
            deposit = self.store.get(deposit_id)
        return deposit

    def list_all(self) -> List[Deposit]:
        return self.store.scan_all()

    async def fulfil(self, deposit_id: str) -> Deposit:
        """
        Mark the requirement fulfilled

        Raises:
            DepositNotFound: unknown id
            InvalidState: deadline passed (the deposit is expired), already
                fulfilled, or expired/cancelled
        """
        expired_late = False
        async with self.locks.lock(deposit_id):
            deposit = self.store.get(deposit_id)
            if deposit is None:
                raise DepositNotFound(deposit_id)

            if deposit.status == DepositStatus.FULFILLED.value:
                raise InvalidState("Deposit already fulfilled")

            if await self.expiry.expire_locked(deposit) is not None:
                expired_late = True
            elif deposit.status in (DepositStatus.EXPIRED.value, DepositStatus.CANCELLED.value):
                raise InvalidState(f"Cannot fulfill: deposit is {deposit.status}")
            else:
                deposit.update_status(DepositStatus.FULFILLED, now=self.clock())
                self.store.put(deposit)

        if expired_late:
            await self.expiry.notify_expired(deposit)
            raise InvalidState("Cannot fulfill: deposit has expired")

        logger.info(f"✅ DEPOSIT_FULFILLED: {deposit_id}")
        return deposit

    async def update_notification_preferences(self, deposit_id: str, preferences: Dict[str, bool]) -> Deposit:
        async with self.locks.lock(deposit_id):
            deposit = self.store.get(deposit_id)
            if deposit is None:
                raise DepositNotFound(deposit_id)
            deposit.update_notification_preferences(preferences, now=self.clock())
            self.store.put(deposit)
            return deposit

    async def set_emails(self, deposit_id: str, creator_email: Optional[str], receiver_email: Optional[str]) -> Deposit:
        creator_email = normalize_optional_email(creator_email, "creator_email")
        receiver_email = normalize_optional_email(receiver_email, "receiver_email")
        async with self.locks.lock(deposit_id):
            deposit = self.store.get(deposit_id)
            if deposit is None:
                raise DepositNotFound(deposit_id)
            deposit.set_emails(creator_email, receiver_email, now=self.clock())
            self.store.put(deposit)
            return deposit
