"""
Resurrection Loop - The Safety Net
===================================
Background task that finds completed orders whose fulfillment never finished
(process died between the status transition and entitlement writing) and
re-runs the idempotent EntitlementWriter.fulfill().

Features:
- Runs every RESURRECTION_INTERVAL seconds
- Only looks at orders completed more than RESURRECTION_THRESHOLD minutes ago,
  so it never races a confirmation that is still in flight
- Items with any entitlement from the order (even a later cancelled one) are
  treated as fulfilled; staff cancellations are not undone
- Logs and audits every resurrection
"""

import os
import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

import structlog

from payments.audit import AuditTrail
from payments.entitlements import EntitlementWriter
from payments.ledger import OrderLedger
from schemas.payment_models import AuditEventType, Order, OrderStatus, utcnow

logger = structlog.get_logger().bind(component="resurrection")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ResurrectionConfig:
    """Resurrection loop configuration"""

    def __init__(self):
        # How often to sweep (seconds)
        self.CHECK_INTERVAL = int(os.getenv("RESURRECTION_INTERVAL", "300"))

        # How long after completion an unfulfilled order counts as stuck (minutes)
        self.STUCK_THRESHOLD = int(os.getenv("RESURRECTION_THRESHOLD", "10"))

        # How far back to look (hours)
        self.LOOKBACK_HOURS = int(os.getenv("RESURRECTION_LOOKBACK_HOURS", "72"))

        # Orders fetched per page
        self.MAX_ORDERS_PER_CYCLE = int(os.getenv("RESURRECTION_BATCH_SIZE", "100"))

        self.ENABLED = os.getenv("RESURRECTION_ENABLED", "true").lower() == "true"


@dataclass
class SweepResult:
    scanned: int = 0
    resurrected: int = 0
    failed: int = 0


# =============================================================================
# RESURRECTION LOGIC
# =============================================================================

async def missing_items(order: Order, writer: EntitlementWriter) -> List[str]:
    """Line item ids with no entitlement from this order and none active for the buyer."""
    issued = {e.item_id for e in await writer.list_for_order(order.id)}
    missing = []
    for item in order.line_items:
        if item.item_id in issued or item.item_id in missing:
            continue
        if await writer.entitlements.find_active(order.buyer_id, item.item_id) is None:
            missing.append(item.item_id)
    return missing


async def resurrect_order(order: Order, writer: EntitlementWriter, audit: AuditTrail) -> bool:
    """Re-run fulfillment for one order. Returns True if it had missing items."""
    missing = await missing_items(order, writer)
    if not missing:
        return False

    logger.warning("resurrecting_order", order_id=order.id, buyer_id=order.buyer_id, missing=missing)
    entitlements = await writer.fulfill(order)
    await audit.emit(
        AuditEventType.FULFILLMENT_RESURRECTED,
        entity_type="order",
        entity_id=order.id,
        metadata={"missing_items": missing, "entitlements": [e.id for e in entitlements]},
        actor="resurrection",
    )
    return True


async def run_resurrection_cycle(
    ledger: OrderLedger,
    writer: EntitlementWriter,
    config: Optional[ResurrectionConfig] = None,
) -> SweepResult:
    """One sweep over recently completed orders."""
    config = config or ResurrectionConfig()
    now = utcnow()
    updated_before = now - timedelta(minutes=config.STUCK_THRESHOLD)
    updated_after = now - timedelta(hours=config.LOOKBACK_HOURS)

    result = SweepResult()
    offset = 0
    while True:
        orders = await ledger.orders.list_stale(
            OrderStatus.COMPLETED,
            updated_before=updated_before,
            updated_after=updated_after,
            limit=config.MAX_ORDERS_PER_CYCLE,
            offset=offset,
        )
        for order in orders:
            result.scanned += 1
            try:
                if await resurrect_order(order, writer, ledger.audit):
                    result.resurrected += 1
            except Exception as e:
                result.failed += 1
                logger.error("resurrection_failed", order_id=order.id, error=str(e))

        if len(orders) < config.MAX_ORDERS_PER_CYCLE:
            break
        offset += len(orders)

    if result.resurrected or result.failed:
        logger.warning(
            "resurrection_cycle_complete",
            scanned=result.scanned,
            resurrected=result.resurrected,
            failed=result.failed,
        )
    else:
        logger.debug("resurrection_cycle_complete", scanned=result.scanned)
    return result


async def resurrection_loop(
    ledger: OrderLedger,
    writer: EntitlementWriter,
    config: Optional[ResurrectionConfig] = None,
):
    """
    Sweep forever, sleeping CHECK_INTERVAL between cycles.
    Cancelled by the application lifespan on shutdown.
    """
    config = config or ResurrectionConfig()
    logger.info(
        "resurrection_loop_started",
        interval=config.CHECK_INTERVAL,
        threshold=config.STUCK_THRESHOLD,
        enabled=config.ENABLED,
    )

    if not config.ENABLED:
        logger.info("resurrection_loop_disabled")
        return

    while True:
        try:
            await run_resurrection_cycle(ledger, writer, config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("resurrection_loop_error", error=str(e))

        await asyncio.sleep(config.CHECK_INTERVAL)
