"""
Confirmation Reconciler
=======================
Drives an order from checkout to fulfillment.

Two unordered, at-least-once triggers confirm a payment: the paying client's
verify call and the provider's webhook. Both converge on
OrderLedger.transition_status(pending -> completed) followed by the
idempotent EntitlementWriter.fulfill(), so whichever arrives first does the
real work and the other is a no-op. A lost transition race is the expected
outcome of that design and is absorbed here, never surfaced.
"""

from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from payments.audit import AuditTrail
from payments.entitlements import EntitlementWriter
from payments.errors import InvalidSignature, InvalidTransition, NotFound, ValidationError
from payments.gateway import IPaymentGateway
from payments.ledger import OrderLedger
from payments.notifications import NotificationDispatcher, NotificationTemplate
from schemas.payment_models import (
    AuditEventType,
    CreateOrderResponse,
    Entitlement,
    GatewayEvent,
    GatewayEventType,
    LineItem,
    Order,
    OrderStatus,
    VerifyPaymentResponse,
    WebhookAck,
)

logger = structlog.get_logger().bind(component="reconciler")

WebhookHandler = Callable[[GatewayEvent], Awaitable[None]]


class WebhookRouter:
    """Maps provider event types to handlers."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: GatewayEvent) -> bool:
        """Run the handler for `event`; False when the type is not consumed."""
        handler = self._handlers.get(event.event)
        if handler is None:
            self._logger.info("no_handler", event_type=event.event)
            return False
        await handler(event)
        return True

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())


class ConfirmationReconciler:

    def __init__(
        self,
        ledger: OrderLedger,
        writer: EntitlementWriter,
        gateway: IPaymentGateway,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.ledger = ledger
        self.writer = writer
        self.gateway = gateway
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.audit = audit or ledger.audit

        self.router = WebhookRouter()
        self.router.register(GatewayEventType.PAYMENT_CAPTURED.value)(self._on_payment_captured)
        self.router.register(GatewayEventType.PAYMENT_FAILED.value)(self._on_payment_failed)

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def start_checkout(
        self,
        buyer_id: str,
        line_items: List[LineItem],
        currency: str = "INR",
    ) -> CreateOrderResponse:
        """
        Create the local pending order, then the provider order, then link them.

        A GatewayUnavailable leaves only a pending order with no reference,
        which no confirmation can ever match; the client retries checkout.
        """
        order = await self.ledger.create_pending_order(buyer_id, line_items, currency)
        remote = await self.gateway.create_remote_order(
            order.amount,
            order.currency,
            buyer_id,
            receipt=order.id,
        )
        order = await self.ledger.attach_external_reference(order.id, remote.id)
        return CreateOrderResponse(
            gateway_order_id=remote.id,
            amount=order.amount,
            currency=order.currency,
            local_order_id=order.id,
        )

    async def start_consultation_checkout(self, order_id: str) -> CreateOrderResponse:
        """Provider order for a staff-priced consultation that is now pending."""
        order = await self.ledger.get(order_id)
        if order.external_reference:
            return CreateOrderResponse(
                gateway_order_id=order.external_reference,
                amount=order.amount,
                currency=order.currency,
                local_order_id=order.id,
            )
        if order.status != OrderStatus.PENDING:
            raise InvalidTransition(
                f"Order is {order.status.value}, not pending",
                current_status=order.status,
            )

        remote = await self.gateway.create_remote_order(
            order.amount,
            order.currency,
            order.buyer_id,
            receipt=order.id,
        )
        order = await self.ledger.attach_external_reference(order.id, remote.id)
        return CreateOrderResponse(
            gateway_order_id=remote.id,
            amount=order.amount,
            currency=order.currency,
            local_order_id=order.id,
        )

    # =========================================================================
    # CLIENT VERIFICATION PATH
    # =========================================================================

    async def verify_client_payment(
        self,
        external_reference: str,
        payment_id: str,
        signature: str,
    ) -> VerifyPaymentResponse:
        if not self.gateway.verify_client_signature(external_reference, payment_id, signature):
            logger.warning(
                "client_signature_invalid",
                external_reference=external_reference,
                payment_id=payment_id,
            )
            raise InvalidSignature("Payment could not be verified")

        order = await self.ledger.find_by_external_reference(external_reference)
        if order is None:
            raise NotFound("Payment order not found", external_reference=external_reference)

        order, transitioned = await self._complete(order, actor="client", payment_id=payment_id)

        entitlements: List[Entitlement] = []
        if order.status == OrderStatus.COMPLETED:
            entitlements = await self.writer.fulfill(order)
        else:
            logger.info(
                "verify_on_settled_order",
                order_id=order.id,
                status=order.status.value,
            )

        if transitioned:
            self._notify_confirmed(order, entitlements)

        return VerifyPaymentResponse(
            order_id=order.id,
            status=order.status,
            entitlements=entitlements,
        )

    # =========================================================================
    # WEBHOOK PATH
    # =========================================================================

    async def handle_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookAck:
        """
        Verify, parse and route one provider delivery.

        Raises InvalidSignature before touching any state. Once the signature
        is good every domain outcome (unknown event, unknown order, lost race)
        is acknowledged; infrastructure errors propagate so the provider
        redelivers.
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature_header):
            logger.warning("webhook_signature_invalid", body_bytes=len(raw_body or b""))
            raise InvalidSignature("Invalid webhook signature")

        try:
            event = self.gateway.parse_webhook(raw_body)
        except ValidationError as e:
            logger.warning("webhook_payload_unreadable", error=e.message)
            return WebhookAck()

        with structlog.contextvars.bound_contextvars(
            webhook_event=event.event,
            external_reference=event.external_reference,
        ):
            logger.info("webhook_received", payment_id=event.payment_id)

            handled = await self.router.route(event)
            if handled:
                await self.audit.emit(
                    AuditEventType.WEBHOOK_RECEIVED,
                    entity_type="webhook",
                    entity_id=event.payment_id or event.external_reference or "unknown",
                    metadata={"event": event.event, "external_reference": event.external_reference},
                    actor="gateway",
                )
        return WebhookAck()

    async def _on_payment_captured(self, event: GatewayEvent) -> None:
        order = await self._order_for_event(event)
        if order is None:
            return

        if event.amount is not None and Decimal(event.amount) != order.amount:
            logger.warning(
                "amount_mismatch",
                order_id=order.id,
                ledger_amount=str(order.amount),
                captured_amount=str(event.amount),
            )

        order, transitioned = await self._complete(order, actor="webhook", payment_id=event.payment_id)
        if order.status != OrderStatus.COMPLETED:
            logger.info("capture_on_settled_order", order_id=order.id, status=order.status.value)
            return

        entitlements = await self.writer.fulfill(order)
        if transitioned:
            self._notify_confirmed(order, entitlements)

    async def _on_payment_failed(self, event: GatewayEvent) -> None:
        order = await self._order_for_event(event)
        if order is None:
            return

        try:
            order = await self.ledger.transition_status(
                order.id,
                OrderStatus.PENDING,
                OrderStatus.FAILED,
                actor="webhook",
            )
        except InvalidTransition as e:
            logger.info(
                "transition_lost_race",
                order_id=order.id,
                target=OrderStatus.FAILED.value,
                current_status=e.current_status.value if e.current_status else None,
            )
            return

        self.dispatcher.dispatch(
            order.buyer_id,
            NotificationTemplate.PAYMENT_FAILED,
            {
                "order_id": order.id,
                "amount": str(order.amount),
                "currency": order.currency,
                "reason": event.error_description,
            },
        )

    async def _order_for_event(self, event: GatewayEvent) -> Optional[Order]:
        if not event.external_reference:
            logger.warning("webhook_missing_reference", payment_id=event.payment_id)
            return None
        order = await self.ledger.find_by_external_reference(event.external_reference)
        if order is None:
            logger.warning("webhook_order_not_found", payment_id=event.payment_id)
        return order

    # =========================================================================
    # SHARED
    # =========================================================================

    async def _complete(
        self,
        order: Order,
        actor: str,
        payment_id: Optional[str] = None,
    ) -> Tuple[Order, bool]:
        """pending -> completed; returns (current order, whether this call transitioned it)."""
        try:
            completed = await self.ledger.transition_status(
                order.id,
                OrderStatus.PENDING,
                OrderStatus.COMPLETED,
                actor=actor,
            )
        except InvalidTransition as e:
            logger.info(
                "transition_lost_race",
                order_id=order.id,
                target=OrderStatus.COMPLETED.value,
                current_status=e.current_status.value if e.current_status else None,
                actor=actor,
            )
            return await self.ledger.get(order.id), False

        logger.info("payment_confirmed", order_id=completed.id, payment_id=payment_id, actor=actor)
        return completed, True

    def _notify_confirmed(self, order: Order, entitlements: List[Entitlement]) -> None:
        self.dispatcher.dispatch(
            order.buyer_id,
            NotificationTemplate.PAYMENT_CONFIRMED,
            {
                "order_id": order.id,
                "amount": str(order.amount),
                "currency": order.currency,
                "items": [e.item_id for e in entitlements],
            },
        )
