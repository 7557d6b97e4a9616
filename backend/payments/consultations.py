"""
Consultation Pricing Workflow
=============================
Free consultation requests become payable orders once staff quote a price.

    request()  -> order(status=free_consultation, amount=0)
    activate() -> order(status=pending, amount=price)   # staff only

After activation the order goes through the ordinary checkout and
confirmation path like any other pending order.
"""

import math
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple, List

import structlog

from payments.errors import InvalidPrice
from payments.ledger import OrderLedger
from payments.notifications import NotificationDispatcher, NotificationTemplate
from schemas.payment_models import LineItem, Order, OrderStatus, Pagination

logger = structlog.get_logger().bind(component="consultations")

PRICE_QUANTUM = Decimal("0.01")


def _validated_price(price) -> Decimal:
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPrice("Price must be a number")
    if not value.is_finite() or value <= 0:
        raise InvalidPrice("Price must be greater than zero")
    if value != value.quantize(PRICE_QUANTUM):
        raise InvalidPrice("Price can have at most two decimal places")
    return value.quantize(PRICE_QUANTUM)


class ConsultationPricingWorkflow:

    def __init__(self, ledger: OrderLedger, dispatcher: Optional[NotificationDispatcher] = None):
        self.ledger = ledger
        self.dispatcher = dispatcher or NotificationDispatcher()

    async def request(self, buyer_id: str, item: LineItem, currency: str = "INR") -> Order:
        return await self.ledger.create_consultation_order(buyer_id, item, currency)

    async def activate(self, order_id: str, price, staff_id: Optional[str] = None) -> Order:
        """
        Quote `price` for a free consultation order and make it payable.

        Raises:
            InvalidPrice: price is not a positive amount with at most 2 decimals.
            InvalidState: the order is not in free_consultation (already priced).
            NotFound: no such order.
        """
        value = _validated_price(price)
        order = await self.ledger.activate_consultation(order_id, value, staff_id)

        self.dispatcher.dispatch(
            order.buyer_id,
            NotificationTemplate.CONSULTATION_PRICED,
            {
                "order_id": order.id,
                "amount": str(order.amount),
                "currency": order.currency,
                "items": [item.item_id for item in order.line_items],
            },
        )
        return order

    async def list_pending(self, page: int = 1, limit: int = 20) -> Tuple[List[Order], Pagination]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        orders, total = await self.ledger.list_orders(
            status=OrderStatus.FREE_CONSULTATION,
            limit=limit,
            offset=(page - 1) * limit,
        )
        pagination = Pagination(
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )
        return orders, pagination
