"""
Wiring for the payment subsystem.

Everything the HTTP layer and the resurrection task need is built here once
per process (or per test) and passed around explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from database import Database
from payments.audit import AuditTrail
from payments.consultations import ConsultationPricingWorkflow
from payments.entitlements import EntitlementWriter
from payments.gateway import IPaymentGateway
from payments.ledger import ICatalog, OrderLedger
from payments.notifications import NotificationDispatcher
from payments.postgres import PostgresAuditLog, PostgresEntitlementRepository, PostgresOrderRepository
from payments.reconciler import ConfirmationReconciler
from payments.repositories import (
    IAuditLog,
    IEntitlementRepository,
    IOrderRepository,
    InMemoryAuditLog,
    InMemoryEntitlementRepository,
    InMemoryOrderRepository,
)


@dataclass
class PaymentComponents:
    ledger: OrderLedger
    writer: EntitlementWriter
    reconciler: ConfirmationReconciler
    consultations: ConsultationPricingWorkflow
    gateway: IPaymentGateway
    dispatcher: NotificationDispatcher
    audit: AuditTrail
    storage: str = "memory"


def build_components(
    orders: IOrderRepository,
    entitlements: IEntitlementRepository,
    audit_log: IAuditLog,
    gateway: IPaymentGateway,
    dispatcher: Optional[NotificationDispatcher] = None,
    catalog: Optional[ICatalog] = None,
    storage: str = "memory",
) -> PaymentComponents:
    dispatcher = dispatcher or NotificationDispatcher()
    audit = AuditTrail(audit_log)
    ledger = OrderLedger(orders, audit, catalog)
    writer = EntitlementWriter(entitlements, audit)
    return PaymentComponents(
        ledger=ledger,
        writer=writer,
        reconciler=ConfirmationReconciler(ledger, writer, gateway, dispatcher, audit),
        consultations=ConsultationPricingWorkflow(ledger, dispatcher),
        gateway=gateway,
        dispatcher=dispatcher,
        audit=audit,
        storage=storage,
    )


def in_memory_components(
    gateway: IPaymentGateway,
    dispatcher: Optional[NotificationDispatcher] = None,
    catalog: Optional[ICatalog] = None,
) -> PaymentComponents:
    return build_components(
        InMemoryOrderRepository(),
        InMemoryEntitlementRepository(),
        InMemoryAuditLog(),
        gateway,
        dispatcher,
        catalog,
        storage="memory",
    )


def postgres_components(
    db: Database,
    gateway: IPaymentGateway,
    dispatcher: Optional[NotificationDispatcher] = None,
    catalog: Optional[ICatalog] = None,
) -> PaymentComponents:
    return build_components(
        PostgresOrderRepository(db),
        PostgresEntitlementRepository(db),
        PostgresAuditLog(db),
        gateway,
        dispatcher,
        catalog,
        storage="postgres",
    )
