"""
Persistence interfaces for the payment ledger
=============================================
Abstract repositories plus in-memory implementations (tests, local runs
without DATABASE_URL). The Postgres implementations live in payments.postgres.

The only contended record is the Order row, and it is only ever mutated
through conditional writes (compare_and_set_status, attach_external_reference,
activate_consultation) that return None when the guard did not match. Callers
never read-then-write an order.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Tuple

import structlog

from schemas.payment_models import (
    AuditLogEntry,
    Entitlement,
    EntitlementStatus,
    Order,
    OrderStatus,
    utcnow,
)

logger = structlog.get_logger().bind(component="repositories")


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderRepository(ABC):
    """Order Ledger storage"""

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_external_reference(self, reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def attach_external_reference(self, order_id: str, reference: str) -> Optional[Order]:
        """Set the gateway reference on a pending order that has none yet."""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
    ) -> Optional[Order]:
        """Atomically move `expected` -> `new`. None when zero rows matched."""
        pass

    @abstractmethod
    async def activate_consultation(
        self,
        order_id: str,
        price: Decimal,
        staff_id: Optional[str],
        activated_at: datetime,
    ) -> Optional[Order]:
        """Atomically price a free_consultation order and move it to pending."""
        pass

    @abstractmethod
    async def list_by_buyer(self, buyer_id: str) -> List[Order]:
        pass

    @abstractmethod
    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        """Newest first, with the total count for the filter."""
        pass

    @abstractmethod
    async def list_stale(
        self,
        status: OrderStatus,
        updated_before: datetime,
        updated_after: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Order]:
        """Orders in `status` last touched inside the window, oldest first."""
        pass


class IEntitlementRepository(ABC):
    """Entitlement (purchase) storage"""

    @abstractmethod
    async def insert_if_absent(self, entitlement: Entitlement) -> Optional[Entitlement]:
        """Insert unless an active entitlement exists for (buyer_id, item_id).

        Returns None when one already exists.
        """
        pass

    @abstractmethod
    async def find_active(self, buyer_id: str, item_id: str) -> Optional[Entitlement]:
        pass

    @abstractmethod
    async def get(self, entitlement_id: str) -> Optional[Entitlement]:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> List[Entitlement]:
        pass

    @abstractmethod
    async def list_by_buyer(self, buyer_id: str) -> List[Entitlement]:
        pass

    @abstractmethod
    async def set_status(
        self,
        entitlement_id: str,
        expected: EntitlementStatus,
        new: EntitlementStatus,
    ) -> Optional[Entitlement]:
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_type: str, entity_id: str) -> List[AuditLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderRepository(IOrderRepository):
    """In-memory order ledger; every mutation happens under one lock"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._by_reference: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def insert(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Duplicate order id: {order.id}")
            if order.external_reference:
                if order.external_reference in self._by_reference:
                    raise ValueError(f"Duplicate external reference: {order.external_reference}")
                self._by_reference[order.external_reference] = order.id
            self._orders[order.id] = order.model_copy(deep=True)
            return order.model_copy(deep=True)

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def get_by_external_reference(self, reference: str) -> Optional[Order]:
        async with self._lock:
            order_id = self._by_reference.get(reference)
            if order_id is None:
                return None
            return self._orders[order_id].model_copy(deep=True)

    async def attach_external_reference(self, order_id: str, reference: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if (
                order is None
                or order.external_reference is not None
                or order.status != OrderStatus.PENDING
            ):
                return None
            if reference in self._by_reference:
                raise ValueError(f"Duplicate external reference: {reference}")
            order.external_reference = reference
            order.updated_at = utcnow()
            self._by_reference[reference] = order_id
            return order.model_copy(deep=True)

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
    ) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != expected:
                return None
            order.status = new
            order.updated_at = utcnow()
            return order.model_copy(deep=True)

    async def activate_consultation(
        self,
        order_id: str,
        price: Decimal,
        staff_id: Optional[str],
        activated_at: datetime,
    ) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != OrderStatus.FREE_CONSULTATION:
                return None
            order.amount = price
            order.consultation_price = price
            order.price_activated_by_staff = True
            order.activated_at = activated_at
            order.activated_by = staff_id
            if order.line_items:
                order.line_items[0].price = price
            order.status = OrderStatus.PENDING
            order.updated_at = activated_at
            return order.model_copy(deep=True)

    async def list_by_buyer(self, buyer_id: str) -> List[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.buyer_id == buyer_id]
            orders.sort(key=lambda o: o.created_at, reverse=True)
            return [o.model_copy(deep=True) for o in orders]

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        async with self._lock:
            orders = [o for o in self._orders.values() if status is None or o.status == status]
            orders.sort(key=lambda o: o.created_at, reverse=True)
            page = orders[offset:offset + limit]
            return [o.model_copy(deep=True) for o in page], len(orders)

    async def list_stale(
        self,
        status: OrderStatus,
        updated_before: datetime,
        updated_after: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Order]:
        async with self._lock:
            orders = [
                o for o in self._orders.values()
                if o.status == status
                and o.updated_at < updated_before
                and (updated_after is None or o.updated_at >= updated_after)
            ]
            orders.sort(key=lambda o: o.updated_at)
            return [o.model_copy(deep=True) for o in orders[offset:offset + limit]]


class InMemoryEntitlementRepository(IEntitlementRepository):
    """In-memory entitlements with the (buyer, item) active-uniqueness check under a lock"""

    def __init__(self):
        self._entitlements: dict[str, Entitlement] = {}
        self._lock = asyncio.Lock()

    def _active(self, buyer_id: str, item_id: str) -> Optional[Entitlement]:
        for e in self._entitlements.values():
            if (
                e.buyer_id == buyer_id
                and e.item_id == item_id
                and e.status == EntitlementStatus.ACTIVE
            ):
                return e
        return None

    async def insert_if_absent(self, entitlement: Entitlement) -> Optional[Entitlement]:
        async with self._lock:
            if (
                entitlement.status == EntitlementStatus.ACTIVE
                and self._active(entitlement.buyer_id, entitlement.item_id)
            ):
                logger.debug("active_entitlement_exists", buyer_id=entitlement.buyer_id, item_id=entitlement.item_id)
                return None
            self._entitlements[entitlement.id] = entitlement.model_copy(deep=True)
            return entitlement.model_copy(deep=True)

    async def find_active(self, buyer_id: str, item_id: str) -> Optional[Entitlement]:
        async with self._lock:
            found = self._active(buyer_id, item_id)
            return found.model_copy(deep=True) if found else None

    async def get(self, entitlement_id: str) -> Optional[Entitlement]:
        async with self._lock:
            found = self._entitlements.get(entitlement_id)
            return found.model_copy(deep=True) if found else None

    async def list_by_order(self, order_id: str) -> List[Entitlement]:
        async with self._lock:
            found = [e for e in self._entitlements.values() if e.source_order_id == order_id]
            found.sort(key=lambda e: e.created_at)
            return [e.model_copy(deep=True) for e in found]

    async def list_by_buyer(self, buyer_id: str) -> List[Entitlement]:
        async with self._lock:
            found = [e for e in self._entitlements.values() if e.buyer_id == buyer_id]
            found.sort(key=lambda e: e.created_at, reverse=True)
            return [e.model_copy(deep=True) for e in found]

    async def set_status(
        self,
        entitlement_id: str,
        expected: EntitlementStatus,
        new: EntitlementStatus,
    ) -> Optional[Entitlement]:
        async with self._lock:
            found = self._entitlements.get(entitlement_id)
            if found is None or found.status != expected:
                return None
            found.status = new
            found.updated_at = utcnow()
            return found.model_copy(deep=True)


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_entity: dict[tuple, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_entity[(entry.entity_type, entry.entity_id)].append(entry)

    async def get_by_entity(self, entity_type: str, entity_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_entity.get((entity_type, entity_id), []))
