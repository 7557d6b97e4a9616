"""
Gateway Adapter
===============
Thin wrapper around the external payment provider (Razorpay REST API).

- Remote order creation over httpx with a bounded timeout, no internal retries
- Local HMAC-SHA256 checks for the client callback and webhook signatures
- The only place amounts cross between major units (rupees, stored in the
  ledger) and the provider's minor units (paise)
"""

import hashlib
import hmac
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx
import structlog

from payments.errors import GatewayUnavailable, ValidationError
from schemas.payment_models import GatewayEvent, RemoteOrder

logger = structlog.get_logger().bind(component="gateway")

MINOR_UNITS_PER_MAJOR = 100


def to_minor_units(amount: Decimal) -> int:
    """Rupees -> paise"""
    return int((Decimal(amount) * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    """Paise -> rupees"""
    return (Decimal(int(value)) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class GatewayConfig:
    """Configuration for the payment provider."""
    key_id: str
    key_secret: str
    webhook_secret: str
    api_url: str = "https://api.razorpay.com/v1"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            api_url=os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1"),
            timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10.0")),
        )

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)


def _hmac_matches(secret: str, message: bytes, signature) -> bool:
    if not secret or not isinstance(signature, str) or not signature:
        return False
    expected = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "replace"))


# ============================================================================
# INTERFACE
# ============================================================================

class IPaymentGateway(ABC):
    """Payment provider contract used by the ledger and reconciler"""

    @abstractmethod
    async def create_remote_order(
        self,
        amount: Decimal,
        currency: str,
        buyer_id: str,
        receipt: Optional[str] = None,
    ) -> RemoteOrder:
        """Create a provider order for `amount` (major units). Raises GatewayUnavailable."""
        pass

    @abstractmethod
    def verify_client_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        pass

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> GatewayEvent:
        pass


# ============================================================================
# RAZORPAY
# ============================================================================

class RazorpayGateway(IPaymentGateway):
    """
    Razorpay implementation.

    The HTTP client is created in initialize() and closed in close(); both
    are driven by the application lifespan. `transport` lets tests substitute
    an httpx.MockTransport.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or GatewayConfig.from_env()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url,
                timeout=self.config.timeout_seconds,
                auth=(self.config.key_id, self.config.key_secret),
                transport=self._transport,
            )
            logger.info("gateway_client_initialized", api_url=self.config.api_url)

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def create_remote_order(
        self,
        amount: Decimal,
        currency: str,
        buyer_id: str,
        receipt: Optional[str] = None,
    ) -> RemoteOrder:
        if not self.config.configured:
            logger.error("gateway_not_configured")
            raise GatewayUnavailable("Payment provider is not configured")

        await self.initialize()
        amount_minor = to_minor_units(amount)
        payload = {
            "amount": amount_minor,
            "currency": currency,
            # Razorpay caps receipts at 40 characters
            "receipt": (receipt or buyer_id)[:40],
            "notes": {"buyer_id": buyer_id},
        }

        try:
            response = await self._client.post("/orders", json=payload)
        except httpx.TimeoutException:
            logger.error("gateway_timeout", amount_minor=amount_minor, currency=currency)
            raise GatewayUnavailable("Payment provider timed out")
        except httpx.HTTPError as e:
            logger.error("gateway_transport_error", error=str(e))
            raise GatewayUnavailable("Payment provider unreachable")

        if response.status_code >= 400:
            description = None
            try:
                description = response.json().get("error", {}).get("description")
            except ValueError:
                pass
            logger.error(
                "gateway_order_rejected",
                status_code=response.status_code,
                description=description,
            )
            raise GatewayUnavailable(description or f"Payment provider returned {response.status_code}")

        try:
            data = response.json()
            remote = RemoteOrder(
                id=data["id"],
                amount=from_minor_units(data["amount"]),
                currency=data.get("currency", currency),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error("gateway_bad_response", error=str(e))
            raise GatewayUnavailable("Payment provider returned an unreadable order")

        logger.info("gateway_order_created", gateway_order_id=remote.id, amount_minor=amount_minor)
        return remote

    def verify_client_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not isinstance(order_id, str) or not isinstance(payment_id, str):
            return False
        message = f"{order_id}|{payment_id}".encode("utf-8", "replace")
        return _hmac_matches(self.config.key_secret, message, signature)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        if not isinstance(raw_body, (bytes, bytearray)):
            return False
        return _hmac_matches(self.config.webhook_secret, bytes(raw_body), signature_header)

    def parse_webhook(self, raw_body: bytes) -> GatewayEvent:
        try:
            data = json.loads(raw_body)
            event = data["event"]
        except (ValueError, KeyError, TypeError):
            raise ValidationError("Malformed webhook payload")

        entity = ((data.get("payload") or {}).get("payment") or {}).get("entity") or {}
        amount = entity.get("amount")
        return GatewayEvent(
            event=event,
            external_reference=entity.get("order_id"),
            payment_id=entity.get("id"),
            amount=from_minor_units(amount) if isinstance(amount, int) else None,
            currency=entity.get("currency"),
            error_code=entity.get("error_code"),
            error_description=entity.get("error_description"),
        )
