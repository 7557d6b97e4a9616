"""Tests for the Entitlement Writer."""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from payments.audit import AuditTrail
from payments.entitlements import EntitlementWriter, add_months, compute_expiry
from payments.errors import InvalidState, NotFound
from payments.ledger import OrderLedger
from payments.repositories import InMemoryAuditLog, InMemoryEntitlementRepository, InMemoryOrderRepository
from schemas.payment_models import AuditEventType, EntitlementStatus, OrderStatus


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def ledger(audit_log):
    return OrderLedger(InMemoryOrderRepository(), AuditTrail(audit_log))


@pytest.fixture
def repository():
    return InMemoryEntitlementRepository()


@pytest.fixture
def writer(repository, audit_log):
    return EntitlementWriter(repository, AuditTrail(audit_log))


@pytest.fixture
def completed_order(ledger, line_item):
    async def make(buyer_id="buyer-1", items=None):
        order = await ledger.create_pending_order(buyer_id, items or [line_item()])
        return await ledger.transition_status(order.id, OrderStatus.PENDING, OrderStatus.COMPLETED)
    return make


class TestExpiry:
    """Billing period to expiry date."""

    START = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("period,expected", [
        ("monthly", datetime(2025, 2, 28, 12, 0, tzinfo=timezone.utc)),
        ("quarterly", datetime(2025, 4, 30, 12, 0, tzinfo=timezone.utc)),
        ("half_yearly", datetime(2025, 7, 31, 12, 0, tzinfo=timezone.utc)),
        ("yearly", datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)),
    ])
    def test_periodic_billing(self, period, expected):
        assert compute_expiry(period, self.START) == expected

    @pytest.mark.parametrize("period", ["one-time", "", None, "fortnightly"])
    def test_no_expiry(self, period):
        assert compute_expiry(period, self.START) is None

    def test_leap_year_clamp(self):
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)

    def test_year_rollover(self):
        assert add_months(datetime(2024, 11, 15), 3) == datetime(2025, 2, 15)


@pytest.mark.asyncio
class TestFulfill:
    """fulfill() grants one active entitlement per line item, idempotently."""

    async def test_one_entitlement_per_item(self, writer, completed_order, line_item):
        order = await completed_order(items=[
            line_item("itr-filing", "500"),
            line_item("gst-course", "300", billing_period="yearly", features=["videos"]),
        ])

        entitlements = await writer.fulfill(order)

        assert sorted(e.item_id for e in entitlements) == ["gst-course", "itr-filing"]
        assert all(e.status == EntitlementStatus.ACTIVE for e in entitlements)
        assert all(e.source_order_id == order.id for e in entitlements)
        course = next(e for e in entitlements if e.item_id == "gst-course")
        assert course.selected_features == ["videos"]
        assert course.expiry_date is not None
        one_time = next(e for e in entitlements if e.item_id == "itr-filing")
        assert one_time.expiry_date is None

    async def test_second_fulfill_returns_same_set(self, writer, repository, completed_order):
        order = await completed_order()

        first = await writer.fulfill(order)
        second = await writer.fulfill(order)

        assert [e.id for e in first] == [e.id for e in second]
        assert len(await repository.list_by_buyer("buyer-1")) == 1

    async def test_concurrent_fulfill_creates_one_entitlement(self, writer, repository, completed_order):
        order = await completed_order()

        results = await asyncio.gather(*[writer.fulfill(order) for _ in range(10)])

        ids = {e.id for result in results for e in result}
        assert len(ids) == 1
        assert len(await repository.list_by_buyer("buyer-1")) == 1

    async def test_item_already_held_from_other_order_is_skipped(self, writer, repository, completed_order):
        first_order = await completed_order()
        original = await writer.fulfill(first_order)

        second_order = await completed_order()
        result = await writer.fulfill(second_order)

        assert [e.id for e in result] == [e.id for e in original]
        assert result[0].source_order_id == first_order.id
        assert len(await repository.list_by_buyer("buyer-1")) == 1

    async def test_duplicate_line_items_granted_once(self, writer, repository, completed_order, line_item):
        order = await completed_order(items=[line_item("itr-filing", "500"), line_item("itr-filing", "500")])

        result = await writer.fulfill(order)

        assert len(result) == 1
        assert len(await repository.list_by_order(order.id)) == 1

    async def test_requires_completed_order(self, writer, ledger, line_item):
        order = await ledger.create_pending_order("buyer-1", [line_item()])

        with pytest.raises(InvalidState):
            await writer.fulfill(order)

    async def test_grant_is_audited(self, writer, audit_log, completed_order):
        order = await completed_order()

        (entitlement,) = await writer.fulfill(order)
        await writer.fulfill(order)

        entries = await audit_log.get_by_entity("entitlement", entitlement.id)
        assert [e.event_type for e in entries] == [AuditEventType.ENTITLEMENT_GRANTED]


@pytest.mark.asyncio
class TestCancel:

    async def test_cancel_frees_active_slot(self, writer, repository, completed_order):
        order = await completed_order()
        (entitlement,) = await writer.fulfill(order)

        cancelled = await writer.cancel(entitlement.id, actor="staff-1")

        assert cancelled.status == EntitlementStatus.CANCELLED
        assert await repository.find_active("buyer-1", entitlement.item_id) is None

        repurchase = await completed_order()
        (renewed,) = await writer.fulfill(repurchase)
        assert renewed.id != entitlement.id
        assert renewed.source_order_id == repurchase.id

    async def test_refulfilling_same_order_keeps_cancellation(self, writer, repository, completed_order):
        order = await completed_order()
        (entitlement,) = await writer.fulfill(order)
        await writer.cancel(entitlement.id, actor="staff-1")

        (again,) = await writer.fulfill(order)

        assert again.id == entitlement.id
        assert again.status == EntitlementStatus.CANCELLED
        assert len(await writer.list_for_order(order.id)) == 1
        assert await repository.find_active("buyer-1", entitlement.item_id) is None

    async def test_cancel_twice_raises_invalid_state(self, writer, completed_order):
        (entitlement,) = await writer.fulfill(await completed_order())
        await writer.cancel(entitlement.id)

        with pytest.raises(InvalidState):
            await writer.cancel(entitlement.id)

    async def test_cancel_missing(self, writer):
        with pytest.raises(NotFound):
            await writer.cancel("missing")

    async def test_amount_untouched(self, ledger, writer, completed_order):
        order = await completed_order()
        await writer.fulfill(order)

        assert (await ledger.get(order.id)).amount == Decimal("500")
