"""
Tests for the record stores, including the SQLAlchemy backing on in-memory SQLite
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from database import build_engine, build_session_factory, create_tables
from models import AuditAction, DepositStatus, PaymentStatus
from services.deposit_engine import DepositEngine
from services.deposit_store import InMemoryDepositStore, SqlDepositStore

from conftest import make_deposit


@pytest.fixture
def sql_store():
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield SqlDepositStore(build_session_factory(engine))
    engine.dispose()


class TestInMemoryStore:

    def test_put_get_scan(self, clock):
        store = InMemoryDepositStore()
        deposit = make_deposit(clock)

        store.put(deposit)

        assert store.get(deposit.id) is deposit
        assert store.get("missing") is None
        assert store.scan_all() == [deposit]
        assert store.count() == 1

    def test_put_requires_id(self, clock):
        deposit = make_deposit(clock)
        deposit.id = None
        with pytest.raises(ValueError):
            InMemoryDepositStore().put(deposit)


class TestSqlStore:

    def test_round_trip(self, sql_store, clock):
        deposit = make_deposit(clock, amount="1234.56", preferences={"expiring_soon": False})

        sql_store.put(deposit)
        loaded = sql_store.get(deposit.id)

        assert loaded is not deposit
        assert loaded.amount == Decimal("1234.56")
        assert loaded.time_limit == deposit.time_limit
        assert loaded.notification_preferences["expiring_soon"] is False
        assert loaded.status == DepositStatus.CREATED.value

    def test_put_replaces_existing(self, sql_store, clock):
        deposit = make_deposit(clock)
        sql_store.put(deposit)

        loaded = sql_store.get(deposit.id)
        loaded.update_payment_status(PaymentStatus.PROCESSING, now=clock() + timedelta(minutes=1))
        sql_store.put(loaded)

        assert sql_store.get(deposit.id).payment_status == PaymentStatus.PROCESSING.value
        assert sql_store.count() == 1

    def test_scan_all_returns_detached_records(self, sql_store, clock):
        for _ in range(3):
            sql_store.put(make_deposit(clock))

        deposits = sql_store.scan_all()

        assert len(deposits) == 3
        # Attribute access after the session closed must not try to refresh
        assert all(d.requirement == "Deliver the package" for d in deposits)

    def test_get_missing(self, sql_store):
        assert sql_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_expiry_sweep_persists(self, sql_store, gateway, clock):
        engine = DepositEngine(store=sql_store, gateway=gateway, clock=clock, send_delay_seconds=0)
        deposit = make_deposit(
            clock,
            time_limit=clock() + timedelta(minutes=5),
            status=DepositStatus.ACTIVE.value,
            payment_status=PaymentStatus.CAPTURED.value,
            payment_ref="pi_sql",
        )
        sql_store.put(deposit)
        clock.advance(minutes=10)

        result = await engine.expiry.process_expired_deposits()

        stored = sql_store.get(deposit.id)
        assert result["processed"] == 1
        assert stored.status == DepositStatus.EXPIRED.value
        assert stored.payment_status == PaymentStatus.REFUNDED.value
        assert len(engine.audit_trail.entries_for(deposit.id, AuditAction.AUTO_REFUND)) == 1
