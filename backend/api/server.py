# api/server.py
# ============================================================================
# PAYMENT ORDERS & ENTITLEMENTS - FASTAPI SERVER
# ============================================================================
# Checkout, the two payment confirmation paths (client verify + provider
# webhook), consultation pricing and the read endpoints around them.
#
# pip install fastapi uvicorn pydantic structlog asyncpg httpx aio-pika
# ============================================================================

import asyncio
import hmac
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from database import Database, DatabaseConfig
from payments.components import PaymentComponents, in_memory_components, postgres_components
from payments.errors import PaymentError, Unauthorized
from payments.gateway import GatewayConfig, RazorpayGateway
from payments.notifications import EventBusNotifier, LogNotifier, NotificationDispatcher
from schemas.payment_models import (
    ActivateConsultationRequest,
    CreateConsultationRequest,
    CreateOrderRequest,
    CreateOrderResponse,
    Entitlement,
    EntitlementList,
    HealthResponse,
    Order,
    OrderList,
    OrderStatus,
    PendingConsultations,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAck,
)
from tasks.resurrection import ResurrectionConfig, resurrection_loop

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    def __init__(self):
        # Server
        self.HOST = os.getenv("HOST", "0.0.0.0")
        self.PORT = int(os.getenv("PORT", "8000"))
        self.ENV = os.getenv("ENV", "development")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # CORS
        self.CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

        # Staff endpoints
        self.ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

        # Storage: Postgres when set, in-memory otherwise
        self.DATABASE_URL = os.getenv("DATABASE_URL", "")

        # RabbitMQ: notifications go to the event bus when set, to the log otherwise
        self.RABBITMQ_URL = os.getenv("RABBITMQ_URL", "")

    @property
    def DEBUG(self) -> bool:
        return self.ENV == "development"


def configure_logging(level: str = "INFO", env: str = "development"):
    """Structured logging; console output in development, JSON elsewhere."""
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if env == "development"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

async def _build_from_env(config: ServerConfig, stack: list) -> PaymentComponents:
    """Construct every collaborator from the environment; `stack` collects closers."""
    gateway = RazorpayGateway(GatewayConfig.from_env())
    await gateway.initialize()
    stack.append(gateway.close)
    if not gateway.config.configured:
        logger.warning("gateway_keys_missing")

    if config.RABBITMQ_URL:
        notifier = EventBusNotifier()
        stack.append(notifier.close)
    else:
        notifier = LogNotifier()
    dispatcher = NotificationDispatcher(notifier)

    db_config = DatabaseConfig()
    db_config.DATABASE_URL = config.DATABASE_URL
    if db_config.enabled:
        db = Database(db_config)
        await db.initialize()
        stack.append(db.close)
        return postgres_components(db, gateway, dispatcher)

    logger.warning("database_url_missing", storage="memory")
    return in_memory_components(gateway, dispatcher)


def _make_lifespan(
    config: ServerConfig,
    components: Optional[PaymentComponents],
    resurrection: ResurrectionConfig,
):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.ENV)
        closers = []

        if components is None:
            app.state.components = await _build_from_env(config, closers)
        app.state.started_at = datetime.now(timezone.utc)

        resurrection_task = None
        if resurrection.ENABLED:
            resurrection_task = asyncio.create_task(
                resurrection_loop(app.state.components.ledger, app.state.components.writer, resurrection)
            )

        yield

        logger.info("server_shutting_down")
        if resurrection_task is not None:
            resurrection_task.cancel()
            try:
                await resurrection_task
            except asyncio.CancelledError:
                pass

        await app.state.components.dispatcher.drain(timeout=5.0)
        for close in reversed(closers):
            await close()

    return lifespan


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_components(request: Request) -> PaymentComponents:
    return request.app.state.components


async def require_staff(
    request: Request,
    x_admin_key: Optional[str] = Header(default=None),
    x_staff_id: Optional[str] = Header(default=None),
) -> str:
    """Staff endpoints: shared admin key; returns the acting staff id."""
    expected = request.app.state.config.ADMIN_API_KEY
    if not expected or not x_admin_key or not hmac.compare_digest(
        expected.encode(), x_admin_key.encode("utf-8", "replace")
    ):
        logger.warning("staff_auth_failed", path=request.url.path)
        raise Unauthorized()
    return x_staff_id or "staff"


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    config: Optional[ServerConfig] = None,
    components: Optional[PaymentComponents] = None,
    resurrection: Optional[ResurrectionConfig] = None,
) -> FastAPI:
    config = config or ServerConfig()
    resurrection = resurrection or ResurrectionConfig()
    configure_logging(config.LOG_LEVEL, config.ENV)

    app = FastAPI(
        title="Payment Orders & Entitlements",
        description="Checkout, payment confirmation and entitlement fulfillment",
        version=VERSION,
        lifespan=_make_lifespan(config, components, resurrection),
    )
    app.state.config = config
    app.state.started_at = datetime.now(timezone.utc)
    if components is not None:
        app.state.components = components

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_context(request: Request, call_next):
        """Bind a correlation id for the request and add timing headers"""
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=request_id)
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration, 2),
        )
        return response

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        log = logger.error if exc.http_status >= 500 else logger.info
        log("request_failed", error=exc.code, message=exc.message, path=request.url.path)
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": exc.code, "message": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
            for err in exc.errors()
        ]
        logger.info("request_invalid", path=request.url.path, errors=details)
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "validation_error", "message": "; ".join(details)},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, error_type=type(exc).__name__)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "internal_error", "message": "Internal server error"},
        )

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        components = getattr(request.app.state, "components", None)
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            storage=components.storage if components else "unavailable",
        )

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    @app.post("/payments/orders", response_model=CreateOrderResponse, status_code=201)
    async def create_order(
        body: CreateOrderRequest,
        components: PaymentComponents = Depends(get_components),
    ):
        structlog.contextvars.bind_contextvars(buyer_id=body.buyer_id)
        return await components.reconciler.start_checkout(body.buyer_id, body.items, body.currency)

    @app.post("/payments/verify", response_model=VerifyPaymentResponse)
    async def verify_payment(
        body: VerifyPaymentRequest,
        components: PaymentComponents = Depends(get_components),
    ):
        structlog.contextvars.bind_contextvars(external_reference=body.external_reference)
        return await components.reconciler.verify_client_payment(
            body.external_reference,
            body.payment_id,
            body.signature,
        )

    @app.post("/payments/webhook", response_model=WebhookAck)
    async def payment_webhook(
        request: Request,
        components: PaymentComponents = Depends(get_components),
    ):
        raw_body = await request.body()
        signature = request.headers.get("X-Signature") or request.headers.get("X-Razorpay-Signature")
        return await components.reconciler.handle_webhook(raw_body, signature)

    @app.get("/payments/orders", response_model=OrderList)
    async def list_buyer_orders(
        buyer_id: str = Query(..., alias="buyerId", min_length=1),
        components: PaymentComponents = Depends(get_components),
    ):
        orders = await components.ledger.list_for_buyer(buyer_id)
        return OrderList(orders=orders, total=len(orders))

    @app.get("/payments/orders/{order_id}", response_model=Order)
    async def get_order(order_id: str, components: PaymentComponents = Depends(get_components)):
        return await components.ledger.get(order_id)

    @app.get("/payments", response_model=OrderList)
    async def list_all_orders(
        status: Optional[OrderStatus] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=200),
        staff_id: str = Depends(require_staff),
        components: PaymentComponents = Depends(get_components),
    ):
        orders, total = await components.ledger.list_orders(
            status=status,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return OrderList(orders=orders, total=total)

    # -------------------------------------------------------------------------
    # Consultations
    # -------------------------------------------------------------------------

    @app.post("/consultations", response_model=Order, status_code=201)
    async def request_consultation(
        body: CreateConsultationRequest,
        components: PaymentComponents = Depends(get_components),
    ):
        return await components.consultations.request(body.buyer_id, body.item, body.currency.upper())

    @app.get("/consultations/pending", response_model=PendingConsultations)
    async def pending_consultations(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        staff_id: str = Depends(require_staff),
        components: PaymentComponents = Depends(get_components),
    ):
        orders, pagination = await components.consultations.list_pending(page, limit)
        return PendingConsultations(consultations=orders, pagination=pagination)

    @app.put("/consultations/{order_id}/activate", response_model=Order)
    async def activate_consultation(
        order_id: str,
        body: ActivateConsultationRequest,
        staff_id: str = Depends(require_staff),
        components: PaymentComponents = Depends(get_components),
    ):
        return await components.consultations.activate(order_id, body.price, staff_id)

    @app.post("/consultations/{order_id}/checkout", response_model=CreateOrderResponse)
    async def consultation_checkout(
        order_id: str,
        components: PaymentComponents = Depends(get_components),
    ):
        return await components.reconciler.start_consultation_checkout(order_id)

    # -------------------------------------------------------------------------
    # Purchases (entitlements)
    # -------------------------------------------------------------------------

    @app.get("/purchases", response_model=EntitlementList)
    async def list_purchases(
        buyer_id: str = Query(..., alias="buyerId", min_length=1),
        components: PaymentComponents = Depends(get_components),
    ):
        return EntitlementList(entitlements=await components.writer.list_for_buyer(buyer_id))

    @app.post("/purchases/{entitlement_id}/cancel", response_model=Entitlement)
    async def cancel_purchase(
        entitlement_id: str,
        staff_id: str = Depends(require_staff),
        components: PaymentComponents = Depends(get_components),
    ):
        return await components.writer.cancel(entitlement_id, actor=staff_id)

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    config = app.state.config
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )
