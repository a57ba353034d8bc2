"""
Tests for the append-only audit trail
"""

from datetime import timedelta

import pytest

from models import AuditAction, AuditLogEntry, SYSTEM_ACTOR
from services.audit_trail_service import AuditTrailService
from utils.exceptions import InvalidInput

from conftest import FrozenClock, make_deposit


@pytest.fixture
def audit_trail(clock):
    return AuditTrailService(clock=clock)


def _entry(deposit_id="dep-1", action="auto_expire", actor=SYSTEM_ACTOR, reason=None, timestamp=None):
    kwargs = {}
    if timestamp is not None:
        kwargs["timestamp"] = timestamp
    return AuditLogEntry(
        deposit_id=deposit_id,
        action=action,
        previous_status="created",
        new_status="expired",
        previous_payment_status="pending",
        new_payment_status="pending",
        actor=actor,
        reason=reason,
        **kwargs,
    )


class TestRecord:

    def test_system_action_recorded_without_reason(self, audit_trail):
        stored = audit_trail.record(_entry())
        assert audit_trail.count() == 1
        assert stored.action == "auto_expire"

    def test_human_action_requires_reason(self, audit_trail):
        with pytest.raises(InvalidInput) as exc_info:
            audit_trail.record(_entry(action="status_override", actor="admin-7", reason="  "))
        assert exc_info.value.field == "reason"
        assert audit_trail.count() == 0

    def test_human_action_requires_admin_actor(self, audit_trail):
        with pytest.raises(InvalidInput) as exc_info:
            audit_trail.record(_entry(action="manual_capture", actor=SYSTEM_ACTOR, reason="Customer asked"))
        assert exc_info.value.field == "actor"

    def test_unknown_action_rejected(self, audit_trail):
        with pytest.raises(InvalidInput):
            audit_trail.record(_entry(action="deleted"))

    def test_entries_are_immutable(self, audit_trail):
        stored = audit_trail.record(_entry())
        with pytest.raises(AttributeError):
            stored.reason = "edited"

    def test_log_transition_captures_both_fields(self, audit_trail, clock):
        deposit = make_deposit(clock, status="expired", payment_status="refunded")

        entry = audit_trail.log_transition(
            deposit,
            AuditAction.AUTO_REFUND,
            previous_status="expired",
            previous_payment_status="captured",
            metadata={"payment_ref": "pi_1"},
        )

        assert entry.previous_status == "expired"
        assert entry.new_status == "expired"
        assert entry.previous_payment_status == "captured"
        assert entry.new_payment_status == "refunded"
        assert entry.actor == SYSTEM_ACTOR
        assert entry.timestamp == clock()
        assert entry.to_dict()["metadata"] == {"payment_ref": "pi_1"}


class TestQuery:

    def test_newest_first_with_insertion_order_tiebreak(self, audit_trail, clock):
        first = audit_trail.record(_entry(timestamp=clock()))
        second = audit_trail.record(_entry(timestamp=clock()))
        older = audit_trail.record(_entry(timestamp=clock() - timedelta(minutes=5)))

        page = audit_trail.query()

        assert [e.id for e in page["audit_logs"]] == [second.id, first.id, older.id]
        assert page["total"] == 3
        assert page["limit"] == 50
        assert page["offset"] == 0

    def test_filter_by_deposit(self, audit_trail):
        audit_trail.record(_entry(deposit_id="a"))
        audit_trail.record(_entry(deposit_id="b"))
        audit_trail.record(_entry(deposit_id="a"))

        page = audit_trail.query(deposit_id="a")

        assert page["total"] == 2
        assert all(e.deposit_id == "a" for e in page["audit_logs"])

    def test_pagination(self, audit_trail):
        clock = FrozenClock()
        for _ in range(5):
            audit_trail.record(_entry(timestamp=clock.advance(seconds=1)))

        page = audit_trail.query(limit=2, offset=1)

        assert len(page["audit_logs"]) == 2
        assert page["total"] == 5

    def test_out_of_range_offset_returns_empty_page(self, audit_trail):
        audit_trail.record(_entry())

        page = audit_trail.query(offset=10)

        assert page["audit_logs"] == []
        assert page["total"] == 1

    def test_negative_limit_and_offset_clamped(self, audit_trail):
        audit_trail.record(_entry())

        page = audit_trail.query(limit=-1, offset=-3)

        assert page["limit"] == 0
        assert page["offset"] == 0
        assert page["audit_logs"] == []
