"""
Postgres repositories
=====================
asyncpg-backed implementations of the payment repositories.

- Status transitions are single conditional UPDATE ... WHERE status = $n
  RETURNING * statements; no row back means the guard did not match.
- Active-entitlement uniqueness is the partial unique index
  uq_entitlements_active_buyer_item, used as the ON CONFLICT target.
"""

import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Tuple

import asyncpg
import structlog

from database import Database, log_event
from payments.repositories import IAuditLog, IEntitlementRepository, IOrderRepository
from schemas.payment_models import (
    AuditLogEntry,
    Entitlement,
    EntitlementStatus,
    LineItem,
    Order,
    OrderStatus,
)

logger = structlog.get_logger().bind(component="postgres")


def _valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _json_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


def _row_to_order(row: asyncpg.Record) -> Order:
    data = dict(row)
    return Order(
        id=str(data["id"]),
        buyer_id=data["buyer_id"],
        external_reference=data["external_reference"],
        amount=data["amount"],
        currency=data["currency"],
        status=OrderStatus(data["status"]),
        payment_method=data["payment_method"],
        line_items=[LineItem.model_validate(item) for item in _json_list(data["line_items"])],
        price_activated_by_staff=data["price_activated_by_staff"],
        consultation_price=data["consultation_price"],
        activated_at=data["activated_at"],
        activated_by=data["activated_by"],
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )


def _row_to_entitlement(row: asyncpg.Record) -> Entitlement:
    data = dict(row)
    return Entitlement(
        id=str(data["id"]),
        buyer_id=data["buyer_id"],
        item_kind=data["item_kind"],
        item_id=data["item_id"],
        selected_features=_json_list(data["selected_features"]),
        billing_period=data["billing_period"],
        source_order_id=str(data["source_order_id"]),
        status=EntitlementStatus(data["status"]),
        expiry_date=data["expiry_date"],
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )


def _line_items_json(order: Order) -> str:
    return json.dumps([item.model_dump(mode="json") for item in order.line_items])


# =============================================================================
# ORDERS
# =============================================================================

class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Database):
        self.db = db

    async def insert(self, order: Order) -> Order:
        row = await self.db.fetch_one(
            """
            INSERT INTO orders
            (id, buyer_id, external_reference, amount, currency, status, payment_method,
             line_items, price_activated_by_staff, consultation_price, activated_at,
             activated_by, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            RETURNING *
            """,
            order.id,
            order.buyer_id,
            order.external_reference,
            order.amount,
            order.currency,
            order.status.value,
            order.payment_method,
            _line_items_json(order),
            order.price_activated_by_staff,
            order.consultation_price,
            order.activated_at,
            order.activated_by,
            order.created_at,
            order.updated_at,
        )
        return _row_to_order(row)

    async def get(self, order_id: str) -> Optional[Order]:
        if not _valid_uuid(order_id):
            return None
        row = await self.db.fetch_one("SELECT * FROM orders WHERE id = $1", order_id)
        return _row_to_order(row) if row else None

    async def get_by_external_reference(self, reference: str) -> Optional[Order]:
        row = await self.db.fetch_one(
            "SELECT * FROM orders WHERE external_reference = $1",
            reference,
        )
        return _row_to_order(row) if row else None

    async def attach_external_reference(self, order_id: str, reference: str) -> Optional[Order]:
        row = await self.db.fetch_one(
            """
            UPDATE orders
            SET external_reference = $2, updated_at = NOW()
            WHERE id = $1 AND status = 'pending' AND external_reference IS NULL
            RETURNING *
            """,
            order_id,
            reference,
        )
        return _row_to_order(row) if row else None

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
    ) -> Optional[Order]:
        if not _valid_uuid(order_id):
            return None
        row = await self.db.fetch_one(
            """
            UPDATE orders
            SET status = $3, updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            order_id,
            expected.value,
            new.value,
        )
        return _row_to_order(row) if row else None

    async def activate_consultation(
        self,
        order_id: str,
        price: Decimal,
        staff_id: Optional[str],
        activated_at: datetime,
    ) -> Optional[Order]:
        if not _valid_uuid(order_id):
            return None
        row = await self.db.fetch_one(
            """
            UPDATE orders
            SET amount = $2,
                consultation_price = $2,
                price_activated_by_staff = TRUE,
                activated_by = $3,
                activated_at = $4,
                status = 'pending',
                updated_at = $4,
                line_items = CASE
                    WHEN jsonb_array_length(line_items) > 0
                    THEN jsonb_set(line_items, '{0,price}', to_jsonb($5::text))
                    ELSE line_items
                END
            WHERE id = $1 AND status = 'free_consultation'
            RETURNING *
            """,
            order_id,
            price,
            staff_id,
            activated_at,
            str(price),
        )
        return _row_to_order(row) if row else None

    async def list_by_buyer(self, buyer_id: str) -> List[Order]:
        rows = await self.db.fetch_all(
            "SELECT * FROM orders WHERE buyer_id = $1 ORDER BY created_at DESC",
            buyer_id,
        )
        return [_row_to_order(row) for row in rows]

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        if status is not None:
            rows = await self.db.fetch_all(
                "SELECT * FROM orders WHERE status = $1 ORDER BY created_at DESC LIMIT $2 OFFSET $3",
                status.value, limit, offset,
            )
            count = await self.db.fetch_one(
                "SELECT COUNT(*) AS total FROM orders WHERE status = $1",
                status.value,
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM orders ORDER BY created_at DESC LIMIT $1 OFFSET $2",
                limit, offset,
            )
            count = await self.db.fetch_one("SELECT COUNT(*) AS total FROM orders")
        return [_row_to_order(row) for row in rows], count["total"] if count else 0

    async def list_stale(
        self,
        status: OrderStatus,
        updated_before: datetime,
        updated_after: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Order]:
        rows = await self.db.fetch_all(
            """
            SELECT * FROM orders
            WHERE status = $1
              AND updated_at < $2
              AND ($3::timestamptz IS NULL OR updated_at >= $3)
            ORDER BY updated_at ASC, id ASC
            LIMIT $4 OFFSET $5
            """,
            status.value,
            updated_before,
            updated_after,
            limit,
            offset,
        )
        return [_row_to_order(row) for row in rows]


# =============================================================================
# ENTITLEMENTS
# =============================================================================

class PostgresEntitlementRepository(IEntitlementRepository):

    def __init__(self, db: Database):
        self.db = db

    async def insert_if_absent(self, entitlement: Entitlement) -> Optional[Entitlement]:
        row = await self.db.fetch_one(
            """
            INSERT INTO entitlements
            (id, buyer_id, item_kind, item_id, selected_features, billing_period,
             source_order_id, status, expiry_date, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (buyer_id, item_id) WHERE status = 'active' DO NOTHING
            RETURNING *
            """,
            entitlement.id,
            entitlement.buyer_id,
            entitlement.item_kind.value,
            entitlement.item_id,
            json.dumps(entitlement.selected_features),
            entitlement.billing_period,
            entitlement.source_order_id,
            entitlement.status.value,
            entitlement.expiry_date,
            entitlement.created_at,
            entitlement.updated_at,
        )
        if row is None:
            logger.debug("active_entitlement_exists", buyer_id=entitlement.buyer_id, item_id=entitlement.item_id)
            return None
        return _row_to_entitlement(row)

    async def find_active(self, buyer_id: str, item_id: str) -> Optional[Entitlement]:
        row = await self.db.fetch_one(
            """
            SELECT * FROM entitlements
            WHERE buyer_id = $1 AND item_id = $2 AND status = 'active'
            """,
            buyer_id,
            item_id,
        )
        return _row_to_entitlement(row) if row else None

    async def get(self, entitlement_id: str) -> Optional[Entitlement]:
        if not _valid_uuid(entitlement_id):
            return None
        row = await self.db.fetch_one("SELECT * FROM entitlements WHERE id = $1", entitlement_id)
        return _row_to_entitlement(row) if row else None

    async def list_by_order(self, order_id: str) -> List[Entitlement]:
        if not _valid_uuid(order_id):
            return []
        rows = await self.db.fetch_all(
            "SELECT * FROM entitlements WHERE source_order_id = $1 ORDER BY created_at ASC",
            order_id,
        )
        return [_row_to_entitlement(row) for row in rows]

    async def list_by_buyer(self, buyer_id: str) -> List[Entitlement]:
        rows = await self.db.fetch_all(
            "SELECT * FROM entitlements WHERE buyer_id = $1 ORDER BY created_at DESC",
            buyer_id,
        )
        return [_row_to_entitlement(row) for row in rows]

    async def set_status(
        self,
        entitlement_id: str,
        expected: EntitlementStatus,
        new: EntitlementStatus,
    ) -> Optional[Entitlement]:
        if not _valid_uuid(entitlement_id):
            return None
        row = await self.db.fetch_one(
            """
            UPDATE entitlements
            SET status = $3, updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            entitlement_id,
            expected.value,
            new.value,
        )
        return _row_to_entitlement(row) if row else None


# =============================================================================
# AUDIT (The Black Box)
# =============================================================================

class PostgresAuditLog(IAuditLog):
    """Writes audit entries to system_events"""

    def __init__(self, db: Database):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await log_event(
            self.db,
            event_type=entry.event_type.value,
            payload={
                "previous_state": entry.previous_state,
                "new_state": entry.new_state,
                "metadata": entry.metadata,
            },
            correlation_id=entry.correlation_id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            actor=entry.actor,
        )

    async def get_by_entity(self, entity_type: str, entity_id: str) -> List[AuditLogEntry]:
        rows = await self.db.fetch_all(
            """
            SELECT * FROM system_events
            WHERE entity_type = $1 AND entity_id = $2
            ORDER BY timestamp ASC
            """,
            entity_type,
            entity_id,
        )
        entries = []
        for row in rows:
            data = dict(row)
            payload = data["payload"]
            if isinstance(payload, str):
                payload = json.loads(payload)
            entries.append(AuditLogEntry(
                log_id=str(data["id"]),
                correlation_id=data["correlation_id"],
                event_type=data["event_type"],
                entity_type=data["entity_type"],
                entity_id=data["entity_id"],
                previous_state=payload.get("previous_state"),
                new_state=payload.get("new_state"),
                metadata=payload.get("metadata") or {},
                timestamp=data["timestamp"],
                actor=data["actor"] or "system",
            ))
        return entries
