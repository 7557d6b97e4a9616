# schemas/payment_models.py
# ============================================================================
# PAYMENT ORDER & ENTITLEMENT SCHEMAS
# ============================================================================
# Domain records (Order, Entitlement, audit entries), gateway value objects,
# and the validated request/response bodies of the HTTP surface.
# Wire format is camelCase; Python attributes are snake_case.
# ============================================================================

from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import uuid

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class CamelModel(BaseModel):
    """Base for every schema exchanged over HTTP or persisted as JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestModel(CamelModel):
    """Request bodies reject unknown fields at the boundary."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    FREE_CONSULTATION = "free_consultation"
    FREE_SERVICE = "free_service"


class ItemKind(str, Enum):
    SERVICE = "service"
    COURSE = "course"


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class GatewayEventType(str, Enum):
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_REFERENCED = "order.referenced"
    ORDER_COMPLETED = "order.completed"
    ORDER_FAILED = "order.failed"
    CONSULTATION_REQUESTED = "consultation.requested"
    CONSULTATION_ACTIVATED = "consultation.activated"
    ENTITLEMENT_GRANTED = "entitlement.granted"
    ENTITLEMENT_CANCELLED = "entitlement.cancelled"
    WEBHOOK_RECEIVED = "webhook.received"
    FULFILLMENT_RESURRECTED = "fulfillment.resurrected"


DEFAULT_BILLING_PERIOD = "one-time"


# ============================================================================
# SECTION 2: DOMAIN RECORDS
# ============================================================================

class LineItem(CamelModel):
    """One purchased catalog item, embedded in its Order."""
    item_kind: ItemKind
    item_id: str = Field(min_length=1, max_length=64)
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    billing_period: str = Field(default=DEFAULT_BILLING_PERIOD, min_length=1, max_length=24)
    selected_features: List[str] = Field(default_factory=list)


class Order(CamelModel):
    """A monetary purchase intent; the source of truth for whether money moved."""
    id: str = Field(default_factory=new_id)
    buyer_id: str
    external_reference: Optional[str] = None
    amount: Decimal
    currency: str = "INR"
    status: OrderStatus = OrderStatus.PENDING
    payment_method: str = "razorpay"
    line_items: List[LineItem] = Field(default_factory=list)

    # Consultation pricing
    price_activated_by_staff: bool = False
    consultation_price: Optional[Decimal] = None
    activated_at: Optional[datetime] = None
    activated_by: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def line_items_total(self) -> Decimal:
        return sum((item.price for item in self.line_items), Decimal("0"))


class Entitlement(CamelModel):
    """Grants a buyer access to one catalog item."""
    id: str = Field(default_factory=new_id)
    buyer_id: str
    item_kind: ItemKind
    item_id: str
    selected_features: List[str] = Field(default_factory=list)
    billing_period: str = DEFAULT_BILLING_PERIOD
    source_order_id: str
    status: EntitlementStatus = EntitlementStatus.ACTIVE
    expiry_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=new_id)
    correlation_id: Optional[str] = None
    event_type: AuditEventType
    entity_type: str  # "order", "entitlement", "webhook"
    entity_id: str
    previous_state: Optional[Dict[str, Any]] = None
    new_state: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"


# ============================================================================
# SECTION 3: GATEWAY VALUE OBJECTS (major currency units)
# ============================================================================

class RemoteOrder(BaseModel):
    """Order created at the payment provider."""
    id: str
    amount: Decimal
    currency: str


class GatewayEvent(BaseModel):
    """A verified, parsed provider webhook."""
    event: str
    external_reference: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None


# ============================================================================
# SECTION 4: REQUEST BODIES
# ============================================================================

class CreateOrderRequest(RequestModel):
    buyer_id: str = Field(min_length=1, max_length=64)
    items: List[LineItem] = Field(min_length=1)
    currency: str = Field(default="INR", min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class VerifyPaymentRequest(RequestModel):
    external_reference: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class CreateConsultationRequest(RequestModel):
    buyer_id: str = Field(min_length=1, max_length=64)
    item: LineItem
    currency: str = Field(default="INR", min_length=3, max_length=3)


class ActivateConsultationRequest(RequestModel):
    # Range is enforced by the workflow so the error is InvalidPrice
    price: Decimal


# ============================================================================
# SECTION 5: RESPONSE BODIES
# ============================================================================

class CreateOrderResponse(CamelModel):
    gateway_order_id: str
    amount: Decimal
    currency: str
    local_order_id: str


class VerifyPaymentResponse(CamelModel):
    order_id: str
    status: OrderStatus
    entitlements: List[Entitlement]


class WebhookAck(BaseModel):
    status: str = "ok"


class OrderList(CamelModel):
    orders: List[Order]
    total: int


class EntitlementList(CamelModel):
    entitlements: List[Entitlement]


class Pagination(CamelModel):
    total: int
    page: int
    limit: int
    total_pages: int


class PendingConsultations(CamelModel):
    consultations: List[Order]
    pagination: Pagination


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    storage: str
