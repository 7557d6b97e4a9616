"""Tests for the Consultation Pricing Workflow."""
from decimal import Decimal

import pytest

from payments.errors import InvalidPrice, InvalidState, NotFound
from payments.notifications import NotificationTemplate
from schemas.payment_models import OrderStatus


@pytest.mark.asyncio
class TestRequestConsultation:

    async def test_request_records_free_order(self, components, line_item):
        order = await components.consultations.request("buyer-1", line_item("tax-advice", "1200"))

        assert order.status == OrderStatus.FREE_CONSULTATION
        assert order.amount == Decimal("0")
        assert order.line_items[0].item_id == "tax-advice"
        assert order.line_items[0].price == Decimal("0")

    async def test_request_has_no_gateway_reference(self, components, line_item):
        order = await components.consultations.request("buyer-1", line_item("tax-advice", "0"))

        assert order.external_reference is None
        assert await components.writer.list_for_buyer("buyer-1") == []


@pytest.mark.asyncio
class TestActivate:
    """Staff pricing of a consultation order."""

    async def test_scenario_d_activation_makes_order_payable(self, components, line_item):
        order = await components.consultations.request("buyer-1", line_item("tax-advice", "0"))

        activated = await components.consultations.activate(order.id, Decimal("750"), staff_id="staff-1")

        assert activated.status == OrderStatus.PENDING
        assert activated.amount == Decimal("750")
        assert activated.consultation_price == Decimal("750")
        assert activated.price_activated_by_staff is True
        assert activated.activated_by == "staff-1"
        assert activated.line_items[0].price == Decimal("750")

    async def test_scenario_e_second_activation_raises_invalid_state(self, components, line_item):
        order = await components.consultations.request("buyer-1", line_item("tax-advice", "0"))
        await components.consultations.activate(order.id, Decimal("750"))

        with pytest.raises(InvalidState):
            await components.consultations.activate(order.id, Decimal("900"))

        stored = await components.ledger.get(order.id)
        assert stored.amount == Decimal("750")
        assert stored.status == OrderStatus.PENDING

    @pytest.mark.parametrize("price", [
        Decimal("0"),
        Decimal("-10"),
        Decimal("10.001"),
        Decimal("NaN"),
        Decimal("Infinity"),
        "abc",
        None,
    ])
    async def test_invalid_price_raises_invalid_price(self, components, line_item, price):
        order = await components.consultations.request("buyer-1", line_item("tax-advice", "0"))

        with pytest.raises(InvalidPrice):
            await components.consultations.activate(order.id, price)

        assert (await components.ledger.get(order.id)).status == OrderStatus.FREE_CONSULTATION

    async def test_invalid_price_checked_before_state(self, components, line_item):
        order = await components.ledger.create_pending_order("buyer-1", [line_item()])

        with pytest.raises(InvalidPrice):
            await components.consultations.activate(order.id, Decimal("0"))

    async def test_accepts_numeric_strings(self, components, line_item):
        order = await components.consultations.request("buyer-1", line_item("tax-advice", "0"))

        activated = await components.consultations.activate(order.id, "499.90")

        assert activated.amount == Decimal("499.90")

    async def test_missing_order(self, components):
        with pytest.raises(NotFound):
            await components.consultations.activate("missing", Decimal("750"))

    async def test_buyer_notified_of_price(self, components, dispatcher, notifier, line_item):
        order = await components.consultations.request("buyer-1", line_item("tax-advice", "0"))

        await components.consultations.activate(order.id, Decimal("750"))
        await dispatcher.drain()

        assert notifier.sent == [(
            "buyer-1",
            NotificationTemplate.CONSULTATION_PRICED,
            {"order_id": order.id, "amount": "750.00", "currency": "INR", "items": ["tax-advice"]},
        )]


@pytest.mark.asyncio
class TestListPending:

    async def test_only_unpriced_consultations_listed(self, components, line_item):
        first = await components.consultations.request("buyer-1", line_item("tax-advice", "0"))
        second = await components.consultations.request("buyer-2", line_item("audit-advice", "0"))
        await components.ledger.create_pending_order("buyer-3", [line_item()])
        await components.consultations.activate(first.id, Decimal("100"))

        orders, pagination = await components.consultations.list_pending()

        assert [o.id for o in orders] == [second.id]
        assert pagination.total == 1
        assert pagination.total_pages == 1

    async def test_pagination(self, components, line_item):
        for i in range(5):
            await components.consultations.request(f"buyer-{i}", line_item(f"advice-{i}", "0"))

        orders, pagination = await components.consultations.list_pending(page=2, limit=2)

        assert len(orders) == 2
        assert pagination.total == 5
        assert pagination.page == 2
        assert pagination.total_pages == 3

    async def test_empty(self, components):
        orders, pagination = await components.consultations.list_pending()

        assert orders == []
        assert pagination.total_pages == 0
