"""
Database Module - The Black Box
================================
Persistence layer for the payment ledger with centralized event logging.

This module provides:
- AsyncPG connection pool for PostgreSQL (constructed per process, injected)
- Schema migrations for orders, entitlements and system_events
- The Black Box (system_events) for unified audit logging

pip install asyncpg
"""

import os
import json
from uuid import uuid4
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List
from contextlib import asynccontextmanager

import structlog
import asyncpg

logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONFIGURATION
# =============================================================================

class DatabaseConfig:
    """Database configuration from environment"""

    def __init__(self):
        self.DATABASE_URL = os.getenv("DATABASE_URL", "")
        self.MIN_POOL_SIZE = int(os.getenv("DB_MIN_POOL_SIZE", "5"))
        self.MAX_POOL_SIZE = int(os.getenv("DB_MAX_POOL_SIZE", "20"))

    @property
    def enabled(self) -> bool:
        return bool(self.DATABASE_URL)


# =============================================================================
# MIGRATIONS
# =============================================================================

MIGRATIONS = [
    # Orders: the financial ledger, never deleted
    """
    CREATE TABLE IF NOT EXISTS orders (
        id UUID PRIMARY KEY,
        buyer_id VARCHAR(64) NOT NULL,
        external_reference VARCHAR(64),
        amount NUMERIC(12, 2) NOT NULL CHECK (amount >= 0),
        currency VARCHAR(8) NOT NULL DEFAULT 'INR',
        status VARCHAR(24) NOT NULL DEFAULT 'pending',
        payment_method VARCHAR(32) NOT NULL,
        line_items JSONB NOT NULL DEFAULT '[]',
        price_activated_by_staff BOOLEAN NOT NULL DEFAULT FALSE,
        consultation_price NUMERIC(12, 2),
        activated_at TIMESTAMPTZ,
        activated_by VARCHAR(64),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Entitlements (purchases) granted from completed orders
    """
    CREATE TABLE IF NOT EXISTS entitlements (
        id UUID PRIMARY KEY,
        buyer_id VARCHAR(64) NOT NULL,
        item_kind VARCHAR(16) NOT NULL,
        item_id VARCHAR(64) NOT NULL,
        selected_features JSONB NOT NULL DEFAULT '[]',
        billing_period VARCHAR(24) NOT NULL DEFAULT 'one-time',
        source_order_id UUID NOT NULL REFERENCES orders(id),
        status VARCHAR(16) NOT NULL DEFAULT 'active',
        expiry_date TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # THE BLACK BOX: Unified event log
    """
    CREATE TABLE IF NOT EXISTS system_events (
        id UUID PRIMARY KEY,
        correlation_id VARCHAR(64),
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        event_type VARCHAR(50) NOT NULL,
        entity_type VARCHAR(32),
        entity_id VARCHAR(64),
        actor VARCHAR(64),
        payload JSONB NOT NULL DEFAULT '{}',
        severity VARCHAR(10) DEFAULT 'INFO'
    )
    """,

    # Idempotency key for gateway callbacks
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_external_reference
    ON orders(external_reference) WHERE external_reference IS NOT NULL
    """,
    # At most one active entitlement per (buyer, item)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_entitlements_active_buyer_item
    ON entitlements(buyer_id, item_id) WHERE status = 'active'
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders(buyer_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_order ON entitlements(source_order_id)",
    "CREATE INDEX IF NOT EXISTS idx_entitlements_buyer ON entitlements(buyer_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_events_correlation ON system_events(correlation_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_entity ON system_events(entity_type, entity_id)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager.

    One instance per process, created in the application lifespan and handed
    to the repositories that need it.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self):
        """Initialize the connection pool and run migrations"""
        if self.initialized:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.config.DATABASE_URL,
                min_size=self.config.MIN_POOL_SIZE,
                max_size=self.config.MAX_POOL_SIZE,
            )
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

        logger.info("database_pool_initialized")
        await self._run_migrations()

    async def close(self):
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if not self.initialized:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        """Execute a query, returning the command status (e.g. 'UPDATE 1')"""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row"""
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        """Fetch all rows"""
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _run_migrations(self):
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError:
                    # Index created concurrently by another worker
                    pass

        logger.info("database_migrations_complete", count=len(MIGRATIONS))


# =============================================================================
# THE BLACK BOX: Event Logging
# =============================================================================

async def log_event(
    db: Database,
    event_type: str,
    payload: Dict[str, Any],
    correlation_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor: str = "system",
    severity: str = "INFO",
) -> str:
    """
    Unified event logging for the payment subsystem.

    Every significant state change flows through here, creating a complete
    audit trail. A failed insert is logged and never propagated: the audit
    trail must not be able to fail a financial operation.

    Args:
        db: Database the event is written to
        event_type: Audit event name (e.g. "order.completed")
        payload: Event-specific data
        correlation_id: Request correlation id
        entity_type: "order", "entitlement", "webhook"
        entity_id: Identifier of the entity
        actor: "system", "webhook", "client", or a staff id
        severity: DEBUG, INFO, WARN, ERROR, CRITICAL

    Returns:
        Event ID
    """
    event_id = str(uuid4())

    try:
        await db.execute(
            """
            INSERT INTO system_events
            (id, correlation_id, timestamp, event_type, entity_type, entity_id, actor, payload, severity)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            event_id,
            correlation_id,
            datetime.now(timezone.utc),
            event_type,
            entity_type,
            entity_id,
            actor,
            json.dumps(payload, default=str),
            severity,
        )
    except Exception as e:
        logger.error("event_log_write_failed", event_type=event_type, error=str(e))

    return event_id

