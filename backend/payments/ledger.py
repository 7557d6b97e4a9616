"""
Order Ledger
============
Persistent record of purchase intents and their monetary status.

transition_status() is the idempotency primitive the rest of the subsystem is
built on: it is one conditional write ("update where id = X and status =
from"). A writer that loses a race gets InvalidTransition carrying the status
the winner left behind, which confirmation paths treat as already handled.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

import structlog

from payments.audit import AuditTrail
from payments.errors import InvalidState, InvalidTransition, NotFound, ValidationError
from payments.repositories import IOrderRepository
from schemas.payment_models import (
    AuditEventType,
    ItemKind,
    LineItem,
    Order,
    OrderStatus,
    utcnow,
)

logger = structlog.get_logger().bind(component="order_ledger")


ALLOWED_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.COMPLETED, OrderStatus.FAILED},
    # Staff pricing re-enters the payable lifecycle; see activate_consultation
    OrderStatus.FREE_CONSULTATION: {OrderStatus.PENDING},
}


class ICatalog(ABC):
    """Server-side price lookup for catalog items"""

    @abstractmethod
    async def get_price(
        self,
        item_kind: ItemKind,
        item_id: str,
        billing_period: str,
    ) -> Optional[Decimal]:
        """Current price, or None when the item is not sold."""
        pass


class OrderLedger:

    def __init__(
        self,
        orders: IOrderRepository,
        audit: Optional[AuditTrail] = None,
        catalog: Optional[ICatalog] = None,
    ):
        self.orders = orders
        self.audit = audit or AuditTrail()
        self.catalog = catalog

    # =========================================================================
    # CREATION
    # =========================================================================

    async def create_pending_order(
        self,
        buyer_id: str,
        line_items: List[LineItem],
        currency: str = "INR",
        payment_method: str = "razorpay",
    ) -> Order:
        """Persist a pending order whose amount is the sum of its line item prices."""
        if not line_items:
            raise ValidationError("Order needs at least one line item")

        await self._check_catalog_prices(line_items)

        amount = sum((item.price for item in line_items), Decimal("0"))
        if amount <= 0:
            raise ValidationError("Order total must be greater than zero")

        order = await self.orders.insert(Order(
            buyer_id=buyer_id,
            amount=amount,
            currency=currency,
            status=OrderStatus.PENDING,
            payment_method=payment_method,
            line_items=[item.model_copy(deep=True) for item in line_items],
        ))

        await self.audit.emit(
            AuditEventType.ORDER_CREATED,
            entity_type="order",
            entity_id=order.id,
            new_state={"status": order.status.value, "amount": str(order.amount)},
            metadata={"item_count": len(order.line_items), "currency": currency},
            actor=buyer_id,
        )
        logger.info(
            "order_created",
            order_id=order.id,
            buyer_id=buyer_id,
            amount=str(amount),
            currency=currency,
            item_count=len(line_items),
        )
        return order

    async def create_consultation_order(
        self,
        buyer_id: str,
        line_item: LineItem,
        currency: str = "INR",
    ) -> Order:
        """Record a free consultation intent: amount 0, one zero-priced line item."""
        item = line_item.model_copy(update={"price": Decimal("0")}, deep=True)
        order = await self.orders.insert(Order(
            buyer_id=buyer_id,
            amount=Decimal("0"),
            currency=currency,
            status=OrderStatus.FREE_CONSULTATION,
            payment_method="consultation",
            line_items=[item],
        ))

        await self.audit.emit(
            AuditEventType.CONSULTATION_REQUESTED,
            entity_type="order",
            entity_id=order.id,
            new_state={"status": order.status.value, "amount": "0"},
            metadata={"item_id": item.item_id},
            actor=buyer_id,
        )
        logger.info("consultation_order_created", order_id=order.id, buyer_id=buyer_id, item_id=item.item_id)
        return order

    async def _check_catalog_prices(self, line_items: List[LineItem]):
        if self.catalog is None:
            return
        for item in line_items:
            expected = await self.catalog.get_price(item.item_kind, item.item_id, item.billing_period)
            if expected is None:
                raise ValidationError(f"Item {item.item_id} is not available", item_id=item.item_id)
            if Decimal(expected) != item.price:
                logger.warning(
                    "line_item_price_mismatch",
                    item_id=item.item_id,
                    submitted=str(item.price),
                    catalog=str(expected),
                )
                raise ValidationError(f"Price for {item.item_id} does not match the catalog", item_id=item.item_id)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound("Payment order not found", order_id=order_id)
        return order

    async def find_by_external_reference(self, reference: str) -> Optional[Order]:
        return await self.orders.get_by_external_reference(reference)

    async def list_for_buyer(self, buyer_id: str) -> List[Order]:
        return await self.orders.list_by_buyer(buyer_id)

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        return await self.orders.list_orders(status=status, limit=limit, offset=offset)

    # =========================================================================
    # CONDITIONAL WRITES
    # =========================================================================

    async def attach_external_reference(self, order_id: str, reference: str) -> Order:
        order = await self.orders.attach_external_reference(order_id, reference)
        if order is None:
            current = await self.get(order_id)
            raise InvalidTransition(
                "Order already has a gateway reference or is no longer pending",
                current_status=current.status,
            )

        await self.audit.emit(
            AuditEventType.ORDER_REFERENCED,
            entity_type="order",
            entity_id=order.id,
            new_state={"external_reference": reference},
        )
        logger.info("order_referenced", order_id=order.id, external_reference=reference)
        return order

    async def transition_status(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        actor: str = "system",
    ) -> Order:
        """
        Move an order from `from_status` to `to_status` in one conditional write.

        Raises:
            InvalidTransition: the edge is not in the state machine, or the
                order is no longer in `from_status` (a concurrent writer won).
            NotFound: no such order.
        """
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
            raise InvalidTransition(
                f"Transition {from_status.value} -> {to_status.value} is not allowed",
                current_status=from_status,
            )

        order = await self.orders.compare_and_set_status(order_id, from_status, to_status)
        if order is None:
            current = await self.get(order_id)
            raise InvalidTransition(
                f"Order is {current.status.value}, not {from_status.value}",
                current_status=current.status,
            )

        event_type = {
            OrderStatus.COMPLETED: AuditEventType.ORDER_COMPLETED,
            OrderStatus.FAILED: AuditEventType.ORDER_FAILED,
        }.get(to_status)
        if event_type is not None:
            await self.audit.emit(
                event_type,
                entity_type="order",
                entity_id=order.id,
                previous_state={"status": from_status.value},
                new_state={"status": to_status.value},
                metadata={"external_reference": order.external_reference, "amount": str(order.amount)},
                actor=actor,
            )
        logger.info(
            "order_transitioned",
            order_id=order.id,
            from_status=from_status.value,
            to_status=to_status.value,
            actor=actor,
        )
        return order

    async def activate_consultation(
        self,
        order_id: str,
        price: Decimal,
        staff_id: Optional[str] = None,
    ) -> Order:
        """
        Price a free_consultation order and move it to pending.

        The one sanctioned amount mutation outside pending: amount, the single
        line item price, and consultation_price all become `price`, so the
        amount still equals the line item total. Raises InvalidState when the
        order is not awaiting pricing.
        """
        order = await self.orders.activate_consultation(order_id, price, staff_id, utcnow())
        if order is None:
            current = await self.get(order_id)
            raise InvalidState(
                f"Order is {current.status.value}, not free_consultation",
                current_status=current.status.value,
            )

        await self.audit.emit(
            AuditEventType.CONSULTATION_ACTIVATED,
            entity_type="order",
            entity_id=order.id,
            previous_state={"status": OrderStatus.FREE_CONSULTATION.value, "amount": "0"},
            new_state={"status": order.status.value, "amount": str(order.amount)},
            actor=staff_id or "staff",
        )
        logger.info("consultation_activated", order_id=order.id, price=str(price), staff_id=staff_id)
        return order
