"""Shared fixtures: a fake Razorpay over httpx.MockTransport, signing helpers, in-memory components."""

import hashlib
import hmac
import itertools
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest

from payments.components import in_memory_components
from payments.gateway import GatewayConfig, RazorpayGateway
from payments.notifications import INotifier, NotificationDispatcher
from schemas.payment_models import ItemKind, LineItem

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


class FakeRazorpay:
    """Answers POST /orders like the provider; records what it was sent."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.fail_with: int = 0
        self.raise_exc: Optional[Exception] = None
        self._ids = itertools.count(1)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with:
            return httpx.Response(
                self.fail_with,
                json={"error": {"code": "BAD_REQUEST_ERROR", "description": "provider rejected order"}},
            )
        body = json.loads(request.content)
        return httpx.Response(200, json={
            "id": f"order_TEST{next(self._ids):04d}",
            "entity": "order",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body.get("receipt"),
            "status": "created",
        })

    @property
    def last_payload(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


class RecordingNotifier(INotifier):
    def __init__(self):
        self.sent = []

    async def deliver(self, recipient, template, data):
        self.sent.append((recipient, template, data))


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        key_id="rzp_test_key",
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        api_url="https://api.razorpay.test/v1",
        timeout_seconds=2.0,
    )


@pytest.fixture
def provider():
    return FakeRazorpay()


@pytest.fixture
def gateway(gateway_config, provider):
    return RazorpayGateway(gateway_config, transport=httpx.MockTransport(provider.handle))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier, timeout_seconds=1.0)


@pytest.fixture
def components(gateway, dispatcher):
    return in_memory_components(gateway, dispatcher)


@pytest.fixture
def line_item():
    def make(item_id="itr-filing", price="500", kind=ItemKind.SERVICE, billing_period="one-time", features=None):
        return LineItem(
            item_kind=kind,
            item_id=item_id,
            price=Decimal(price),
            billing_period=billing_period,
            selected_features=features or [],
        )
    return make


@pytest.fixture
def sign_client():
    def sign(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
        return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
    return sign


@pytest.fixture
def sign_webhook():
    def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return sign


@pytest.fixture
def webhook_body():
    def build(event: str, order_id: str, payment_id: str = "pay_TEST0001", amount_minor: int = 50000, **extra) -> bytes:
        entity = {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "amount": amount_minor,
            "currency": "INR",
            "status": "captured" if event == "payment.captured" else "failed",
        }
        entity.update(extra)
        return json.dumps({
            "entity": "event",
            "event": event,
            "payload": {"payment": {"entity": entity}},
        }).encode()
    return build
