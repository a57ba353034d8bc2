"""
Tests for gateway webhook verification and intake
"""

import json
import time

import pytest

from models import DepositStatus, PaymentStatus
from services.deposit_engine import DepositEngine
from services.webhook_security_service import compute_signature, parse_gateway_event, verify_stripe_signature
from utils.exceptions import InvalidInput

SECRET = "whsec_test_secret"


def _signed_header(payload: str, timestamp: int, secret: str = SECRET) -> str:
    return f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"


class TestVerifySignature:

    def test_valid_signature(self):
        payload = '{"type": "payment_intent.succeeded"}'
        now = 1_700_000_000

        assert verify_stripe_signature(payload, _signed_header(payload, now), SECRET, now=now) is True

    def test_any_v1_signature_may_match(self):
        payload = "{}"
        now = 1_700_000_000
        header = f"t={now},v1=deadbeef,v1={compute_signature(payload, SECRET, now)}"

        assert verify_stripe_signature(payload, header, SECRET, now=now) is True

    def test_tampered_payload_rejected(self):
        now = 1_700_000_000
        header = _signed_header('{"amount": 100}', now)

        assert verify_stripe_signature('{"amount": 999}', header, SECRET, now=now) is False

    def test_wrong_secret_rejected(self):
        now = 1_700_000_000
        header = _signed_header("{}", now, secret="whsec_other")

        assert verify_stripe_signature("{}", header, SECRET, now=now) is False

    def test_stale_timestamp_rejected(self):
        signed_at = 1_700_000_000
        header = _signed_header("{}", signed_at)

        assert verify_stripe_signature("{}", header, SECRET, tolerance_seconds=300, now=signed_at + 301) is False
        assert verify_stripe_signature("{}", header, SECRET, tolerance_seconds=300, now=signed_at + 299) is True

    @pytest.mark.parametrize("header", ["", "v1=abc", "t=notanumber,v1=abc", "t=1700000000"])
    def test_malformed_header_rejected(self, header):
        assert verify_stripe_signature("{}", header, SECRET, now=1_700_000_000) is False


class TestParseGatewayEvent:

    def test_verified_event_decoded(self):
        payload = json.dumps({"type": "payment_intent.canceled", "data": {"object": {}}})
        now = int(time.time())

        event = parse_gateway_event(payload, _signed_header(payload, now), secret=SECRET)

        assert event["type"] == "payment_intent.canceled"

    def test_bad_signature_raises(self):
        with pytest.raises(InvalidInput) as exc_info:
            parse_gateway_event('{"type": "x"}', "t=1,v1=00", secret=SECRET)
        assert exc_info.value.field == "signature"

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]", '{"id": "evt_1"}'])
    def test_malformed_payload_raises(self, payload):
        with pytest.raises(InvalidInput) as exc_info:
            parse_gateway_event(payload, secret="")
        assert exc_info.value.field == "payload"


class TestWebhookIntake:

    @pytest.mark.asyncio
    async def test_signed_event_applied(self, store, gateway, clock, seed):
        engine = DepositEngine(store=store, gateway=gateway, clock=clock, webhook_secret=SECRET)
        deposit = seed(payment_status=PaymentStatus.PROCESSING.value, payment_ref="pi_1")
        payload = json.dumps({
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "metadata": {"deposit_id": deposit.id}}},
        })

        result = await engine.handle_webhook(payload, _signed_header(payload, int(time.time())))

        assert result == {"received": True, "handled": True, "type": "checkout.session.completed"}
        stored = store.get(deposit.id)
        assert stored.status == DepositStatus.ACTIVE.value
        assert stored.payment_status == PaymentStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_unsigned_event_rejected_when_secret_configured(self, store, gateway, clock, seed):
        engine = DepositEngine(store=store, gateway=gateway, clock=clock, webhook_secret=SECRET)
        deposit = seed()
        payload = json.dumps({
            "type": "payment_intent.payment_failed",
            "data": {"object": {"metadata": {"deposit_id": deposit.id}}},
        })

        with pytest.raises(InvalidInput):
            await engine.handle_webhook(payload, None)

        assert store.get(deposit.id).status == DepositStatus.CREATED.value
