"""
Tests for the Stripe gateway adapter and the Brevo email transport with mocked I/O
"""

from decimal import Decimal
from unittest.mock import MagicMock, Mock, patch

import pytest
from sib_api_v3_sdk.rest import ApiException

from services.email import BrevoEmailTransport, ConsoleTransport, build_transport
from services.payment_gateway import OfflineGateway, StripeGateway, build_gateway
from utils.exceptions import PaymentGatewayError

from conftest import make_deposit


class _FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    async def json(self, content_type=None):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def __call__(self, *args, **kwargs):
        return self

    def post(self, url, data=None, headers=None):
        self.requests.append({"url": url, "data": data, "headers": headers})
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def stripe():
    return StripeGateway(secret_key="sk_test_1234567890abcd", base_url="https://stripe.test/v1", currency="usd")


class TestStripeGateway:

    @pytest.mark.asyncio
    async def test_create_hold_uses_manual_capture(self, stripe, clock):
        deposit = make_deposit(clock, amount="123.45")
        session = _FakeSession(_FakeResponse(200, {"id": "pi_abc", "status": "requires_capture"}))

        with patch("services.payment_gateway.aiohttp.ClientSession", session):
            payment_ref = await stripe.create_hold(deposit)

        assert payment_ref == "pi_abc"
        request = session.requests[0]
        assert request["url"] == "https://stripe.test/v1/payment_intents"
        assert request["data"]["amount"] == 12345
        assert request["data"]["capture_method"] == "manual"
        assert request["data"]["metadata[deposit_id]"] == deposit.id
        assert request["headers"]["Authorization"] == "Bearer sk_test_1234567890abcd"

    @pytest.mark.asyncio
    async def test_refund_uses_fresh_idempotency_key_per_attempt(self, stripe):
        session = _FakeSession(_FakeResponse(200, {"id": "re_1", "status": "succeeded"}))

        with patch("services.payment_gateway.aiohttp.ClientSession", session):
            await stripe.refund("pi_abc", reason="expired_deposit")
            await stripe.refund("pi_abc", reason="admin_retry")

        first, retry = session.requests
        assert first["url"].endswith("/refunds")
        assert first["data"]["payment_intent"] == "pi_abc"
        assert first["headers"]["Idempotency-Key"].startswith("refund-pi_abc-")
        assert retry["headers"]["Idempotency-Key"].startswith("refund-pi_abc-")
        assert first["headers"]["Idempotency-Key"] != retry["headers"]["Idempotency-Key"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(402, False), (429, True), (503, True)])
    async def test_error_responses_mapped(self, stripe, status, retryable):
        session = _FakeSession(_FakeResponse(status, {"error": {"message": "Your card was declined."}}))

        with patch("services.payment_gateway.aiohttp.ClientSession", session):
            with pytest.raises(PaymentGatewayError) as exc_info:
                await stripe.capture("pi_abc")

        assert exc_info.value.status_code == status
        assert exc_info.value.retryable is retryable
        assert "declined" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_refund_requires_reference(self, stripe):
        with pytest.raises(PaymentGatewayError):
            await stripe.refund(None)

    def test_minor_units(self):
        assert StripeGateway._to_minor_units(Decimal("10.005")) == 1001
        assert StripeGateway._to_minor_units("0.1") == 10

    def test_secret_key_required(self):
        with patch("services.payment_gateway.Config.STRIPE_SECRET_KEY", None):
            with pytest.raises(ValueError):
                StripeGateway()


class TestOfflineGateway:

    @pytest.mark.asyncio
    async def test_every_operation_succeeds(self, clock):
        gateway = OfflineGateway()
        ref = await gateway.create_hold(make_deposit(clock))

        assert ref.startswith("pay_")
        assert (await gateway.capture(ref))["status"] == "succeeded"
        assert (await gateway.cancel(ref))["status"] == "canceled"
        assert (await gateway.refund(ref))["status"] == "succeeded"

    def test_build_gateway_without_key(self):
        with patch("services.payment_gateway.Config.STRIPE_SECRET_KEY", None):
            assert isinstance(build_gateway(), OfflineGateway)


class TestBrevoTransport:

    @pytest.mark.asyncio
    async def test_deliver_success(self):
        with patch("services.email.sib_api_v3_sdk.TransactionalEmailsApi") as api_cls:
            api_cls.return_value.send_transac_email.return_value = Mock(message_id="<msg-1>")
            transport = BrevoEmailTransport(api_key="xkeysib-test", from_email="noreply@example.com")

            delivered = await transport.deliver("user@example.com", "Subject", "Body", html="<p>Body</p>")

        assert delivered is True
        email = api_cls.return_value.send_transac_email.call_args[0][0]
        assert email.subject == "Subject"
        assert email.html_content == "<p>Body</p>"
        assert email.to[0].email == "user@example.com"

    @pytest.mark.asyncio
    async def test_api_error_reported_as_failure(self):
        with patch("services.email.sib_api_v3_sdk.TransactionalEmailsApi") as api_cls:
            api_cls.return_value.send_transac_email.side_effect = ApiException(status=400, reason="Bad Request")
            transport = BrevoEmailTransport(api_key="xkeysib-test")

            assert await transport.deliver("user@example.com", "Subject", "Body") is False

    def test_build_transport_without_key(self):
        with patch("services.email.Config.BREVO_API_KEY", None):
            assert isinstance(build_transport(), ConsoleTransport)

    @pytest.mark.asyncio
    async def test_console_transport_always_succeeds(self):
        assert await ConsoleTransport().deliver("a@b.co", "s", "m") is True
        assert ConsoleTransport.is_live is False
        assert BrevoEmailTransport.is_live is True


def test_api_client_configured_with_key():
    with patch("services.email.sib_api_v3_sdk.ApiClient") as client_cls, \
            patch("services.email.sib_api_v3_sdk.TransactionalEmailsApi", MagicMock()):
        BrevoEmailTransport(api_key="xkeysib-abc")

    configuration = client_cls.call_args[0][0]
    assert configuration.api_key["api-key"] == "xkeysib-abc"
