"""
Payment Gateway adapters

The orchestrator only needs four capabilities from a gateway: place a hold,
capture it, cancel it, and refund a completed payment. StripeGateway implements
them with manual-capture PaymentIntents over the Stripe REST API; OfflineGateway
is the no-network stand-in used when no gateway key is configured.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import Deposit
from utils.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


def _mask_key(key: Optional[str]) -> str:
    if not key:
        return "<unset>"
    return f"{key[:7]}...{key[-4:]}" if len(key) > 12 else "***"


class PaymentGateway(ABC):
    """Capability set of an external payment gateway"""

    name = "gateway"

    @abstractmethod
    async def create_hold(self, deposit: Deposit) -> str:
        """Reserve the deposit amount; returns the gateway's reference for the hold"""

    @abstractmethod
    async def capture(self, payment_ref: str) -> Dict[str, Any]:
        """Convert a hold into a completed transfer"""

    @abstractmethod
    async def cancel(self, payment_ref: str) -> Dict[str, Any]:
        """Release a hold without moving funds"""

    @abstractmethod
    async def refund(self, payment_ref: Optional[str], reason: str = "expired_deposit") -> Dict[str, Any]:
        """Return funds of a completed or captured payment"""


class OfflineGateway(PaymentGateway):
    """Local gateway that accepts every operation; no funds actually move"""

    name = "offline"

    async def create_hold(self, deposit: Deposit) -> str:
        payment_ref = "pay_" + uuid.uuid4().hex[:24]
        logger.info(f"💳 OFFLINE_HOLD: {payment_ref} for deposit {deposit.id} amount={deposit.amount}")
        return payment_ref

    async def capture(self, payment_ref: str) -> Dict[str, Any]:
        logger.info(f"💳 OFFLINE_CAPTURE: {payment_ref}")
        return {"id": payment_ref, "status": "succeeded"}

    async def cancel(self, payment_ref: str) -> Dict[str, Any]:
        logger.info(f"💳 OFFLINE_CANCEL: {payment_ref}")
        return {"id": payment_ref, "status": "canceled"}

    async def refund(self, payment_ref: Optional[str], reason: str = "expired_deposit") -> Dict[str, Any]:
        logger.info(f"💳 OFFLINE_REFUND: {payment_ref} reason={reason}")
        return {"id": "re_" + uuid.uuid4().hex[:24], "payment_intent": payment_ref, "status": "succeeded"}


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents with capture_method=manual"""

    name = "stripe"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.secret_key = secret_key or Config.STRIPE_SECRET_KEY
        self.base_url = (base_url or Config.STRIPE_API_BASE).rstrip("/")
        self.currency = currency or Config.STRIPE_CURRENCY
        self.timeout = aiohttp.ClientTimeout(
            total=timeout_seconds if timeout_seconds is not None else Config.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        )

        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required for StripeGateway")
        logger.info(f"Stripe gateway initialized with key: {_mask_key(self.secret_key)}")

    def _get_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    @staticmethod
    def _to_minor_units(amount) -> int:
        cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(cents)

    async def _post(self, path: str, data: Dict[str, Any] = None, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, data=data or {}, headers=self._get_headers(idempotency_key)) as response:
                    payload = await response.json(content_type=None)
                    if 200 <= response.status < 300:
                        return payload

                    error = (payload or {}).get("error", {}) if isinstance(payload, dict) else {}
                    message = error.get("message") or f"HTTP {response.status}"
                    logger.error(f"❌ STRIPE_API_ERROR: POST {path}: HTTP {response.status}: {message}")
                    raise PaymentGatewayError(
                        f"Stripe rejected request: {message}",
                        status_code=response.status,
                        retryable=response.status >= 500 or response.status == 429,
                    )
        except asyncio.TimeoutError:
            logger.error(f"❌ STRIPE_TIMEOUT: POST {path} exceeded {self.timeout.total}s")
            raise PaymentGatewayError(f"Stripe request timed out after {self.timeout.total}s", retryable=True)
        except aiohttp.ClientError as e:
            logger.error(f"❌ STRIPE_NETWORK_ERROR: POST {path}: {e}")
            raise PaymentGatewayError(f"Network error: {e}", retryable=True)

    async def create_hold(self, deposit: Deposit) -> str:
        payload = await self._post(
            "/payment_intents",
            data={
                "amount": self._to_minor_units(deposit.amount),
                "currency": self.currency,
                "capture_method": "manual",
                "metadata[deposit_id]": deposit.id,
                "description": f"Deposit {deposit.id}",
            },
        )
        payment_ref = payload.get("id")
        if not payment_ref:
            raise PaymentGatewayError("Stripe response did not include a PaymentIntent id")
        logger.info(f"💳 STRIPE_HOLD_CREATED: {payment_ref} for deposit {deposit.id}")
        return payment_ref

    async def capture(self, payment_ref: str) -> Dict[str, Any]:
        return await self._post(f"/payment_intents/{payment_ref}/capture")

    async def cancel(self, payment_ref: str) -> Dict[str, Any]:
        return await self._post(f"/payment_intents/{payment_ref}/cancel")

    async def refund(self, payment_ref: Optional[str], reason: str = "expired_deposit") -> Dict[str, Any]:
        if not payment_ref:
            raise PaymentGatewayError("Cannot refund without a payment reference")
        return await self._post(
            "/refunds",
            data={"payment_intent": payment_ref, "metadata[reason]": reason},
            # Fresh key per attempt
            idempotency_key=f"refund-{payment_ref}-{uuid.uuid4().hex[:12]}",
        )


def build_gateway() -> PaymentGateway:
    """Stripe when a secret key is configured, otherwise the offline gateway"""
    if Config.STRIPE_SECRET_KEY:
        return StripeGateway()
    logger.warning("STRIPE_SECRET_KEY not configured - using offline payment gateway")
    return OfflineGateway()
