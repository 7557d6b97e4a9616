# payments/__init__.py
from payments.errors import (
    PaymentError,
    ValidationError,
    InvalidPrice,
    InvalidSignature,
    Unauthorized,
    NotFound,
    InvalidTransition,
    InvalidState,
    GatewayUnavailable,
)

from payments.gateway import (
    GatewayConfig,
    IPaymentGateway,
    RazorpayGateway,
    to_minor_units,
    from_minor_units,
)

from payments.ledger import (
    ALLOWED_TRANSITIONS,
    ICatalog,
    OrderLedger,
)

from payments.entitlements import (
    EntitlementWriter,
    compute_expiry,
)

from payments.reconciler import (
    ConfirmationReconciler,
    WebhookRouter,
)

from payments.consultations import ConsultationPricingWorkflow

from payments.notifications import (
    NotificationDispatcher,
    NotificationTemplate,
    LogNotifier,
    EventBusNotifier,
)

from payments.components import (
    PaymentComponents,
    build_components,
    in_memory_components,
    postgres_components,
)

__all__ = [
    "PaymentError",
    "ValidationError",
    "InvalidPrice",
    "InvalidSignature",
    "Unauthorized",
    "NotFound",
    "InvalidTransition",
    "InvalidState",
    "GatewayUnavailable",
    "GatewayConfig",
    "IPaymentGateway",
    "RazorpayGateway",
    "to_minor_units",
    "from_minor_units",
    "ALLOWED_TRANSITIONS",
    "ICatalog",
    "OrderLedger",
    "EntitlementWriter",
    "compute_expiry",
    "ConfirmationReconciler",
    "WebhookRouter",
    "ConsultationPricingWorkflow",
    "NotificationDispatcher",
    "NotificationTemplate",
    "LogNotifier",
    "EventBusNotifier",
    "PaymentComponents",
    "build_components",
    "in_memory_components",
    "postgres_components",
]
