"""HTTP surface tests through FastAPI's TestClient."""
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from api.server import ServerConfig, create_app
from tasks.resurrection import ResurrectionConfig

ADMIN_KEY = "admin-secret"
STAFF = {"X-Admin-Key": ADMIN_KEY, "X-Staff-Id": "staff-7"}

ORDER_BODY = {
    "buyerId": "buyer-1",
    "items": [{"itemKind": "service", "itemId": "itr-filing", "price": 500}],
}


@pytest.fixture
def server_config():
    config = ServerConfig()
    config.ADMIN_API_KEY = ADMIN_KEY
    config.ENV = "test"
    return config


@pytest.fixture
def client(server_config, components):
    resurrection = ResurrectionConfig()
    resurrection.ENABLED = False
    with TestClient(create_app(server_config, components, resurrection)) as client:
        yield client


@pytest.fixture
def checkout(client):
    def run(body=None):
        response = client.post("/payments/orders", json=body or ORDER_BODY)
        assert response.status_code == 201
        return response.json()
    return run


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["storage"] == "memory"

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"
        assert "X-Response-Time-Ms" in response.headers

    def test_request_id_generated(self, client):
        assert client.get("/health").headers["X-Request-ID"]


class TestCreateOrder:

    def test_create_order(self, client, provider):
        response = client.post("/payments/orders", json=ORDER_BODY)

        assert response.status_code == 201
        body = response.json()
        assert body["gatewayOrderId"] == "order_TEST0001"
        assert Decimal(body["amount"]) == Decimal("500")
        assert body["currency"] == "INR"
        assert provider.last_payload["amount"] == 50000

        order = client.get(f"/payments/orders/{body['localOrderId']}").json()
        assert order["status"] == "pending"
        assert order["externalReference"] == "order_TEST0001"

    def test_empty_items_rejected(self, client):
        response = client.post("/payments/orders", json={"buyerId": "buyer-1", "items": []})

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert response.json()["success"] is False

    def test_unknown_fields_rejected(self, client):
        response = client.post("/payments/orders", json={**ORDER_BODY, "amount": 1})

        assert response.status_code == 400

    def test_negative_price_rejected(self, client):
        body = {"buyerId": "buyer-1", "items": [{"itemKind": "service", "itemId": "x", "price": -1}]}

        assert client.post("/payments/orders", json=body).status_code == 400

    def test_gateway_failure_is_502(self, client, provider):
        provider.fail_with = 500

        response = client.post("/payments/orders", json=ORDER_BODY)

        assert response.status_code == 502
        assert response.json()["error"] == "gateway_unavailable"


class TestVerify:

    def test_verify_completes_and_fulfills(self, client, checkout, sign_client):
        created = checkout()
        ref = created["gatewayOrderId"]

        response = client.post("/payments/verify", json={
            "externalReference": ref,
            "paymentId": "pay_1",
            "signature": sign_client(ref, "pay_1"),
        })

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert [e["itemId"] for e in body["entitlements"]] == ["itr-filing"]

        purchases = client.get("/purchases", params={"buyerId": "buyer-1"}).json()["entitlements"]
        assert len(purchases) == 1
        assert purchases[0]["sourceOrderId"] == created["localOrderId"]

    def test_repeated_verify_is_idempotent(self, client, checkout, sign_client):
        ref = checkout()["gatewayOrderId"]
        payload = {"externalReference": ref, "paymentId": "pay_1", "signature": sign_client(ref, "pay_1")}

        first = client.post("/payments/verify", json=payload).json()
        second = client.post("/payments/verify", json=payload).json()

        assert first["entitlements"] == second["entitlements"]
        assert len(client.get("/purchases", params={"buyerId": "buyer-1"}).json()["entitlements"]) == 1

    def test_bad_signature(self, client, checkout):
        ref = checkout()["gatewayOrderId"]

        response = client.post("/payments/verify", json={
            "externalReference": ref, "paymentId": "pay_1", "signature": "0" * 64,
        })

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"

    def test_unknown_reference(self, client, sign_client):
        response = client.post("/payments/verify", json={
            "externalReference": "order_NOPE",
            "paymentId": "pay_1",
            "signature": sign_client("order_NOPE", "pay_1"),
        })

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestWebhook:

    def test_captured_webhook_completes_order(self, client, checkout, webhook_body, sign_webhook):
        created = checkout()
        body = webhook_body("payment.captured", created["gatewayOrderId"])

        response = client.post(
            "/payments/webhook",
            content=body,
            headers={"X-Signature": sign_webhook(body), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        order = client.get(f"/payments/orders/{created['localOrderId']}").json()
        assert order["status"] == "completed"

    def test_provider_signature_header_accepted(self, client, checkout, webhook_body, sign_webhook):
        created = checkout()
        body = webhook_body("payment.failed", created["gatewayOrderId"])

        response = client.post("/payments/webhook", content=body, headers={"X-Razorpay-Signature": sign_webhook(body)})

        assert response.status_code == 200
        assert client.get(f"/payments/orders/{created['localOrderId']}").json()["status"] == "failed"

    def test_bad_signature_rejected(self, client, checkout, webhook_body):
        created = checkout()
        body = webhook_body("payment.captured", created["gatewayOrderId"])

        response = client.post("/payments/webhook", content=body, headers={"X-Signature": "bad"})

        assert response.status_code == 400
        assert client.get(f"/payments/orders/{created['localOrderId']}").json()["status"] == "pending"

    def test_missing_signature_rejected(self, client, webhook_body):
        body = webhook_body("payment.captured", "order_TEST0001")

        assert client.post("/payments/webhook", content=body).status_code == 400

    def test_unknown_event_acknowledged(self, client, sign_webhook):
        body = json.dumps({"event": "refund.processed", "payload": {}}).encode()

        response = client.post("/payments/webhook", content=body, headers={"X-Signature": sign_webhook(body)})

        assert response.status_code == 200

    def test_repository_failure_is_500_for_retry(self, server_config, components, webhook_body, sign_webhook):
        components.ledger.orders.get_by_external_reference = AsyncMock(side_effect=ConnectionError("db down"))
        resurrection = ResurrectionConfig()
        resurrection.ENABLED = False
        body = webhook_body("payment.captured", "order_TEST0001")

        with TestClient(create_app(server_config, components, resurrection), raise_server_exceptions=False) as client:
            response = client.post("/payments/webhook", content=body, headers={"X-Signature": sign_webhook(body)})

        assert response.status_code == 500
        assert response.json()["error"] == "internal_error"


class TestOrderQueries:

    def test_list_buyer_orders(self, client, checkout):
        checkout()
        checkout()

        body = client.get("/payments/orders", params={"buyerId": "buyer-1"}).json()

        assert body["total"] == 2

    def test_missing_order_is_404(self, client):
        assert client.get("/payments/orders/does-not-exist").status_code == 404

    def test_staff_listing_requires_key(self, client):
        response = client.get("/payments")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_staff_listing_wrong_key(self, client):
        assert client.get("/payments", headers={"X-Admin-Key": "nope"}).status_code == 401

    def test_staff_listing_filters_status(self, client, checkout, sign_client):
        ref = checkout()["gatewayOrderId"]
        checkout()
        client.post("/payments/verify", json={
            "externalReference": ref, "paymentId": "pay_1", "signature": sign_client(ref, "pay_1"),
        })

        body = client.get("/payments", params={"status": "completed"}, headers=STAFF).json()

        assert body["total"] == 1
        assert body["orders"][0]["externalReference"] == ref


class TestConsultations:

    def request_consultation(self, client):
        response = client.post("/consultations", json={
            "buyerId": "buyer-1",
            "item": {"itemKind": "service", "itemId": "tax-advice", "price": 0},
        })
        assert response.status_code == 201
        return response.json()

    def test_request_is_free(self, client):
        order = self.request_consultation(client)

        assert order["status"] == "free_consultation"
        assert Decimal(order["amount"]) == Decimal("0")

    def test_pending_listing(self, client):
        order = self.request_consultation(client)

        body = client.get("/consultations/pending", headers=STAFF).json()

        assert [c["id"] for c in body["consultations"]] == [order["id"]]
        assert body["pagination"]["totalPages"] == 1

    def test_activate_then_pay(self, client, sign_client):
        order = self.request_consultation(client)

        activated = client.put(f"/consultations/{order['id']}/activate", json={"price": 750}, headers=STAFF)

        assert activated.status_code == 200
        assert activated.json()["status"] == "pending"
        assert Decimal(activated.json()["amount"]) == Decimal("750")
        assert activated.json()["activatedBy"] == "staff-7"

        checkout = client.post(f"/consultations/{order['id']}/checkout").json()
        ref = checkout["gatewayOrderId"]
        assert Decimal(checkout["amount"]) == Decimal("750")

        verified = client.post("/payments/verify", json={
            "externalReference": ref, "paymentId": "pay_9", "signature": sign_client(ref, "pay_9"),
        }).json()
        assert verified["status"] == "completed"
        assert [e["itemId"] for e in verified["entitlements"]] == ["tax-advice"]

    def test_second_activation_conflicts(self, client):
        order = self.request_consultation(client)
        client.put(f"/consultations/{order['id']}/activate", json={"price": 750}, headers=STAFF)

        response = client.put(f"/consultations/{order['id']}/activate", json={"price": 900}, headers=STAFF)

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    def test_zero_price_rejected(self, client):
        order = self.request_consultation(client)

        response = client.put(f"/consultations/{order['id']}/activate", json={"price": 0}, headers=STAFF)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_price"

    def test_activation_requires_staff(self, client):
        order = self.request_consultation(client)

        response = client.put(f"/consultations/{order['id']}/activate", json={"price": 750})

        assert response.status_code == 401

    def test_checkout_before_activation_conflicts(self, client):
        order = self.request_consultation(client)

        response = client.post(f"/consultations/{order['id']}/checkout")

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"


class TestPurchases:

    def test_staff_cancel(self, client, checkout, sign_client):
        ref = checkout()["gatewayOrderId"]
        verified = client.post("/payments/verify", json={
            "externalReference": ref, "paymentId": "pay_1", "signature": sign_client(ref, "pay_1"),
        }).json()
        entitlement_id = verified["entitlements"][0]["id"]

        response = client.post(f"/purchases/{entitlement_id}/cancel", headers=STAFF)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = client.post(f"/purchases/{entitlement_id}/cancel", headers=STAFF)
        assert again.status_code == 409
