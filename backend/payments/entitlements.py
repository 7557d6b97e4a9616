"""
Entitlement Writer
==================
Turns a completed order into active entitlements, one per line item.

fulfill() is idempotent: an item this order already produced an entitlement
for (in any status), or that the buyer already holds actively, is skipped, and
the repository's (buyer, item) uniqueness guard resolves concurrent
fulfillments to a single row. It can be re-run
from either confirmation path or from the resurrection sweep.
"""

import calendar
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from payments.audit import AuditTrail
from payments.errors import InvalidState, NotFound
from payments.repositories import IEntitlementRepository
from schemas.payment_models import (
    AuditEventType,
    Entitlement,
    EntitlementStatus,
    LineItem,
    Order,
    OrderStatus,
    utcnow,
)

logger = structlog.get_logger().bind(component="entitlements")

BILLING_PERIOD_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "half_yearly": 6,
    "yearly": 12,
}


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def compute_expiry(billing_period: str, start: datetime) -> Optional[datetime]:
    """Expiry for a billing period; None for one-time and unknown periods."""
    months = BILLING_PERIOD_MONTHS.get((billing_period or "").lower())
    if months is None:
        return None
    return add_months(start, months)


class EntitlementWriter:

    def __init__(self, entitlements: IEntitlementRepository, audit: Optional[AuditTrail] = None):
        self.entitlements = entitlements
        self.audit = audit or AuditTrail()

    async def fulfill(self, order: Order) -> List[Entitlement]:
        """
        Ensure an active entitlement exists for every line item of `order`.

        Returns one entitlement per distinct item: the row this order already
        produced (a staff-cancelled one stays cancelled), else the active one
        the buyer holds, else a newly created one. Does not touch order status.
        """
        if order.status != OrderStatus.COMPLETED:
            raise InvalidState(
                f"Order {order.id} is {order.status.value}, not completed",
                current_status=order.status.value,
            )

        # Rows already sourced from this order settle their item, cancelled ones included
        granted: Dict[str, Entitlement] = {}
        for existing in await self.entitlements.list_by_order(order.id):
            granted.setdefault(existing.item_id, existing)

        for item in order.line_items:
            if item.item_id in granted:
                continue
            entitlement = await self._grant(order, item)
            if entitlement is not None:
                granted[item.item_id] = entitlement

        logger.info(
            "order_fulfilled",
            order_id=order.id,
            buyer_id=order.buyer_id,
            entitlements=len(granted),
        )
        return list(granted.values())

    async def _grant(self, order: Order, item: LineItem) -> Optional[Entitlement]:
        existing = await self.entitlements.find_active(order.buyer_id, item.item_id)
        if existing is not None:
            logger.debug("entitlement_exists", order_id=order.id, item_id=item.item_id, entitlement_id=existing.id)
            return existing

        now = utcnow()
        created = await self.entitlements.insert_if_absent(Entitlement(
            buyer_id=order.buyer_id,
            item_kind=item.item_kind,
            item_id=item.item_id,
            selected_features=list(item.selected_features),
            billing_period=item.billing_period,
            source_order_id=order.id,
            status=EntitlementStatus.ACTIVE,
            expiry_date=compute_expiry(item.billing_period, now),
            created_at=now,
            updated_at=now,
        ))

        if created is None:
            # Another fulfillment inserted the row between find and insert
            logger.info("entitlement_insert_lost_race", order_id=order.id, item_id=item.item_id)
            return await self.entitlements.find_active(order.buyer_id, item.item_id)

        await self.audit.emit(
            AuditEventType.ENTITLEMENT_GRANTED,
            entity_type="entitlement",
            entity_id=created.id,
            new_state={"status": created.status.value, "item_id": created.item_id},
            metadata={
                "source_order_id": order.id,
                "billing_period": created.billing_period,
                "expiry_date": created.expiry_date.isoformat() if created.expiry_date else None,
            },
            actor=order.buyer_id,
        )
        logger.info(
            "entitlement_granted",
            entitlement_id=created.id,
            order_id=order.id,
            buyer_id=order.buyer_id,
            item_id=created.item_id,
        )
        return created

    async def list_for_buyer(self, buyer_id: str) -> List[Entitlement]:
        return await self.entitlements.list_by_buyer(buyer_id)

    async def list_for_order(self, order_id: str) -> List[Entitlement]:
        return await self.entitlements.list_by_order(order_id)

    async def cancel(self, entitlement_id: str, actor: str = "staff") -> Entitlement:
        """Cancel an active entitlement; the buyer may then purchase the item again."""
        cancelled = await self.entitlements.set_status(
            entitlement_id,
            EntitlementStatus.ACTIVE,
            EntitlementStatus.CANCELLED,
        )
        if cancelled is None:
            current = await self.entitlements.get(entitlement_id)
            if current is None:
                raise NotFound("Purchase not found", entitlement_id=entitlement_id)
            raise InvalidState(
                f"Purchase is {current.status.value}, not active",
                current_status=current.status.value,
            )

        await self.audit.emit(
            AuditEventType.ENTITLEMENT_CANCELLED,
            entity_type="entitlement",
            entity_id=cancelled.id,
            previous_state={"status": EntitlementStatus.ACTIVE.value},
            new_state={"status": EntitlementStatus.CANCELLED.value},
            actor=actor,
        )
        logger.info("entitlement_cancelled", entitlement_id=cancelled.id, actor=actor)
        return cancelled
