"""
Maison Darin Orders API
=======================
FastAPI server for checkout, order administration, payment initiation and
payment-provider webhooks.

Run:
    maison-orders
    uvicorn maison_orders.api.server:app --reload

pip install fastapi uvicorn pydantic structlog httpx asyncpg
"""

import asyncio
import contextlib
import hmac
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import pydantic
import structlog
import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from maison_orders import __version__
from maison_orders.config import DatabaseConfig, Settings, configure_logging
from maison_orders.database import Database
from maison_orders.errors import (
    ErrorCode,
    MaisonError,
    UnauthorizedError,
    ValidationError,
    format_validation_errors,
)
from maison_orders.gateways import GatewayRegistry, build_gateways
from maison_orders.schemas.orders import (
    Order,
    OrderQuery,
    OrderStatusUpdate,
    ReasonRequest,
    StatusType,
    utcnow,
)
from maison_orders.schemas.payments import (
    BankTransferVerification,
    FeeQuoteRequest,
    GatewayResult,
    InitiatePaymentRequest,
)
from maison_orders.services.currency import CurrencyConverter, HttpRateProvider, StaticRateProvider
from maison_orders.services.orders import OrderService
from maison_orders.services.payments import PaymentService
from maison_orders.services.webhooks import WebhookReceiver
from maison_orders.storage.idempotency import (
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    PostgresIdempotencyStore,
)
from maison_orders.storage.orders import (
    InMemoryOrderRepository,
    IOrderRepository,
    PostgresOrderRepository,
)
from maison_orders.tasks.reconciliation import ReconciliationConfig, reconciliation_loop

logger = structlog.get_logger().bind(component="api")


# =============================================================================
# SERVICE WIRING
# =============================================================================

@dataclass
class ServiceContainer:
    """Everything the routes need, built once per application"""
    settings: Settings
    repository: IOrderRepository
    idempotency: IIdempotencyStore
    gateways: GatewayRegistry
    converter: CurrencyConverter
    order_service: OrderService
    payment_service: PaymentService
    webhook_receiver: WebhookReceiver
    database: Optional[Database] = None

    async def close(self) -> None:
        await self.gateways.close()
        await self.converter.close()
        if self.database:
            await self.database.close()


def build_container(
    settings: Settings,
    gateways: Optional[GatewayRegistry] = None,
    repository: Optional[IOrderRepository] = None,
    idempotency: Optional[IIdempotencyStore] = None,
    converter: Optional[CurrencyConverter] = None,
) -> ServiceContainer:
    database = None
    if settings.order_store == "postgres" and (repository is None or idempotency is None):
        database = Database(DatabaseConfig.from_env())
        repository = repository or PostgresOrderRepository(database)
        idempotency = idempotency or PostgresIdempotencyStore(database)

    repository = repository or InMemoryOrderRepository()
    idempotency = idempotency or InMemoryIdempotencyStore()
    gateways = gateways or build_gateways(settings)
    if converter is None:
        provider = (
            HttpRateProvider(ttl_seconds=settings.exchange_rate_ttl_seconds)
            if settings.live_exchange_rates
            else StaticRateProvider()
        )
        converter = CurrencyConverter(provider)

    order_service = OrderService(repository, gateways, settings)
    return ServiceContainer(
        settings=settings,
        repository=repository,
        idempotency=idempotency,
        gateways=gateways,
        converter=converter,
        order_service=order_service,
        payment_service=PaymentService(order_service, gateways, converter),
        webhook_receiver=WebhookReceiver(order_service, gateways, idempotency),
        database=database,
    )


# =============================================================================
# DEPENDENCIES & ENVELOPES
# =============================================================================

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def correlation_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid4())[:8]


def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
) -> None:
    expected = get_container(request).settings.admin_api_key
    if not expected:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise UnauthorizedError("Admin API key required")


def order_query(request: Request) -> OrderQuery:
    try:
        return OrderQuery.model_validate(dict(request.query_params))
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid query parameters", {"errors": format_validation_errors(e.errors())})


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    return {"success": True, "data": data, "message": message}


def order_json(order: Order) -> Dict[str, Any]:
    return order.model_dump(mode="json")


def payment_json(result: GatewayResult) -> Dict[str, Any]:
    return result.model_dump(mode="json", exclude={"raw"})


Container = Depends(get_container)
AdminOnly = [Depends(require_admin)]


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

orders_router = APIRouter(prefix="/api/orders", tags=["orders"])


@orders_router.post("", status_code=201)
async def create_order(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    container: ServiceContainer = Container,
):
    order = await container.order_service.create_order(payload, correlation_id(request))
    return ok(order_json(order), "Order created successfully")


@orders_router.get("", dependencies=AdminOnly)
async def list_orders(
    query: OrderQuery = Depends(order_query),
    container: ServiceContainer = Container,
):
    orders, pagination = await container.order_service.list_orders(query)
    return ok({
        "orders": [order_json(o) for o in orders],
        "pagination": pagination.model_dump(),
    })


@orders_router.get("/stats", dependencies=AdminOnly)
async def order_stats(
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    container: ServiceContainer = Container,
):
    stats = await container.order_service.get_order_stats(start_date, end_date)
    return ok(stats.model_dump(mode="json"))


@orders_router.get("/public/{order_number}")
async def public_order(order_number: str, container: ServiceContainer = Container):
    order = await container.order_service.get_order_by_number(order_number)
    return ok(order.public_view())


@orders_router.get("/{order_id}", dependencies=AdminOnly)
async def get_order(order_id: str, container: ServiceContainer = Container):
    order = await container.order_service.get_order(order_id)
    return ok(order_json(order))


@orders_router.patch("/{order_id}/status", dependencies=AdminOnly)
async def update_order_status(
    order_id: str,
    update: OrderStatusUpdate,
    request: Request,
    container: ServiceContainer = Container,
):
    order = await container.order_service.update_order_status(
        order_id,
        update.status,
        status_type=update.status_type,
        tracking_number=update.tracking_number,
        admin_notes=update.admin_notes,
        correlation_id=correlation_id(request),
    )
    axis = "Order" if update.status_type == StatusType.ORDER else "Payment"
    return ok(order_json(order), f"{axis} status updated successfully")


@orders_router.post("/{order_id}/cancel", dependencies=AdminOnly)
async def cancel_order(
    order_id: str,
    request: Request,
    body: Optional[ReasonRequest] = None,
    container: ServiceContainer = Container,
):
    reason = body.reason if body else None
    order = await container.order_service.cancel_order(order_id, reason, correlation_id=correlation_id(request))
    return ok(order_json(order), "Order cancelled successfully")


@orders_router.post("/{order_id}/confirm", dependencies=AdminOnly)
async def confirm_order(order_id: str, request: Request, container: ServiceContainer = Container):
    order = await container.order_service.confirm_order(order_id, correlation_id(request))
    return ok(order_json(order), "Order confirmed successfully")


@orders_router.post("/{order_id}/refund", dependencies=AdminOnly)
async def refund_order(
    order_id: str,
    request: Request,
    body: Optional[ReasonRequest] = None,
    container: ServiceContainer = Container,
):
    reason = body.reason if body else None
    order = await container.order_service.refund_order(order_id, reason, correlation_id(request))
    return ok(order_json(order), "Order refunded successfully")


@orders_router.get("/{order_id}/refund-eligibility", dependencies=AdminOnly)
async def refund_eligibility(order_id: str, container: ServiceContainer = Container):
    order = await container.order_service.get_order(order_id)
    return ok({
        "order_id": order.order_id,
        "can_be_refunded": order.can_be_refunded(),
        "payment_status": order.payment_status.value,
    })


# =============================================================================
# PAYMENT & WEBHOOK ENDPOINTS
# =============================================================================

payments_router = APIRouter(prefix="/api/payments", tags=["payments"])


@payments_router.get("/methods")
async def payment_methods(container: ServiceContainer = Container):
    methods = container.payment_service.catalogue.list_methods()
    return ok({
        "payment_methods": [m.model_dump(mode="json") for m in methods],
        "store_currency": container.settings.store_currency,
    })


@payments_router.post("/fees")
async def calculate_fees(body: FeeQuoteRequest, container: ServiceContainer = Container):
    quote = await container.payment_service.catalogue.quote(
        body.payment_method, body.amount, body.currency or container.settings.store_currency
    )
    return ok(quote.model_dump(mode="json"))


@payments_router.post("/{order_id}/initiate")
async def initiate_payment(
    order_id: str,
    request: Request,
    body: Optional[InitiatePaymentRequest] = None,
    container: ServiceContainer = Container,
):
    order, result = await container.payment_service.initiate_payment(order_id, body, correlation_id(request))
    return ok({"order": order_json(order), "payment": payment_json(result)}, "Payment initiated")


@payments_router.post("/{order_id}/capture")
async def capture_payment(order_id: str, request: Request, container: ServiceContainer = Container):
    order, result = await container.payment_service.capture_payment(order_id, correlation_id(request))
    return ok({"order": order_json(order), "payment": payment_json(result)}, "Payment captured")


@payments_router.get("/{order_id}/status", dependencies=AdminOnly)
async def payment_status(order_id: str, request: Request, container: ServiceContainer = Container):
    order, result = await container.payment_service.check_payment_status(
        order_id, correlation_id=correlation_id(request)
    )
    return ok({"order": order_json(order), "payment": payment_json(result)})


@payments_router.post("/{order_id}/verify-bank-transfer", dependencies=AdminOnly)
async def verify_bank_transfer(
    order_id: str,
    body: BankTransferVerification,
    request: Request,
    container: ServiceContainer = Container,
):
    order = await container.order_service.verify_bank_transfer(
        order_id, body.verified, body.admin_notes, correlation_id(request)
    )
    message = "Bank transfer verified successfully" if body.verified else "Bank transfer verification failed"
    return ok(order_json(order), message)


webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@webhooks_router.post("/{provider}")
async def receive_webhook(provider: str, request: Request, container: ServiceContainer = Container):
    """Provider notification. Signature is checked against the raw body."""
    body = await request.body()
    outcome = await container.webhook_receiver.handle(
        provider, body, request.headers, correlation_id(request)
    )
    return ok(outcome.model_dump(mode="json"), "Webhook received")


# =============================================================================
# HEALTH ENDPOINTS
# =============================================================================

health_router = APIRouter(tags=["health"])


@health_router.get("/health")
async def health_check(request: Request, container: ServiceContainer = Container):
    uptime = (utcnow() - request.app.state.started_at).total_seconds()
    return {
        "status": "healthy",
        "version": __version__,
        "uptime_seconds": uptime,
        "order_store": container.settings.order_store,
        "database_connected": container.database.initialized if container.database else None,
        "gateways": container.gateways.providers,
    }


@health_router.get("/ready")
async def readiness_check(container: ServiceContainer = Container):
    """Kubernetes readiness probe"""
    ready = container.database.initialized if container.database else True
    return JSONResponse(status_code=200 if ready else 503, content={"ready": ready})


@health_router.get("/live")
async def liveness_check():
    """Kubernetes liveness probe"""
    return {"live": True}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def error_response(status_code: int, error: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def handle_maison_error(request: Request, exc: MaisonError) -> JSONResponse:
    log = logger.error if exc.http_status >= 500 else logger.warning
    log("request_failed", path=request.url.path, code=exc.code.value, error=exc.message)
    return error_response(exc.http_status, exc.to_dict())


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(400, {
        "code": ErrorCode.VALIDATION_ERROR.value,
        "message": "Invalid request data",
        "details": {"errors": format_validation_errors(exc.errors())},
    })


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_crashed", path=request.url.path, error_type=type(exc).__name__)
    return error_response(500, {
        "code": ErrorCode.INTERNAL_ERROR.value,
        "message": "Internal server error",
    })


# =============================================================================
# APP FACTORY
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    container: ServiceContainer = app.state.container
    settings = container.settings
    logger.info("server_starting", version=__version__, env=settings.env,
                order_store=settings.order_store, gateways=container.gateways.providers)
    if not settings.admin_api_key:
        logger.warning("admin_api_key_not_set", detail="admin routes are unauthenticated")

    if container.database:
        await container.database.initialize()

    reconciliation_task = None
    if settings.reconciliation_enabled and container.gateways.providers:
        reconciliation_task = asyncio.create_task(reconciliation_loop(
            container.repository,
            container.payment_service,
            ReconciliationConfig.from_settings(settings),
        ))

    yield

    logger.info("server_shutting_down")
    if reconciliation_task:
        reconciliation_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reconciliation_task
    await container.close()


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    settings = settings or (container.settings if container else Settings.from_env())
    container = container or build_container(settings)

    app = FastAPI(
        title="Maison Darin Orders",
        description="Order lifecycle and payment gateway reconciliation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.started_at = utcnow()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = request.headers.get("X-Request-ID") or str(uuid4())[:8]
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(MaisonError, handle_maison_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)

    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(payments_router)
    app.include_router(webhooks_router)
    return app


configure_logging()
app = create_app()


# =============================================================================
# MAIN
# =============================================================================

def main() -> None:
    settings = Settings.from_env()
    uvicorn.run(
        "maison_orders.api.server:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info",
    )


if __name__ == "__main__":
    main()
