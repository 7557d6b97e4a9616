"""Audit trail emission shared by the ledger, writer and workflows."""

from typing import Any, Dict, Optional

import structlog

from payments.repositories import IAuditLog, InMemoryAuditLog
from schemas.payment_models import AuditEventType, AuditLogEntry

logger = structlog.get_logger().bind(component="audit")


class AuditTrail:
    """
    Appends AuditLogEntry records, tagged with the request correlation id
    bound in structlog contextvars.

    A failed append is logged and dropped; it never fails the operation that
    produced it.
    """

    def __init__(self, log: Optional[IAuditLog] = None):
        self.log = log or InMemoryAuditLog()

    async def emit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        previous_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: str = "system",
    ) -> None:
        correlation_id = structlog.contextvars.get_contextvars().get("correlation_id")
        entry = AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        )
        try:
            await self.log.append(entry)
        except Exception as e:
            logger.error(
                "audit_write_failed",
                event_type=event_type.value,
                entity_id=entity_id,
                error=str(e),
            )
            return

        logger.debug("audit_event", event_type=event_type.value, entity_type=entity_type, entity_id=entity_id)
