from fastapi import FastAPI, Depends, HTTPException, Query, status, Request, BackgroundTasks
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime, timezone
from typing import Dict, List, Optional

from shared.utils import get_db_client, AppException, SuccessResponse, ErrorResponse, HealthResponse
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from checkout_service.broker import PaymentIntentBroker
from checkout_service.collaborators import (
    HttpProductCatalog, LoggingNotificationSink, MongoCartStore, NotificationSink,
    ProductCatalog, Session, SessionResolver, notify_order_placed
)
from checkout_service.config import CheckoutSettings, checkout_settings
from checkout_service.discounts import DiscountCodeRepository, DiscountValidator
from checkout_service.gateways import PaymentGateway, build_gateways
from checkout_service.materializer import OrderMaterializer, OrderRepository
from checkout_service.money import from_minor
from checkout_service.orchestrator import CheckoutOrchestrator
from checkout_service.pricing import PricingEngine
from checkout_service.schemas import (
    CaptureResponse, ConfirmPayment, ConfirmPaymentResponse, CreateIntentRequest,
    DiscountValidate, DiscountValidationResponse, IntentResponse, OrderResponse,
    PayPalCapture, QuoteRequest, QuoteResponse, RegionDetect, ShippingCalculate,
    ShippingCalculateResponse, ShippingRegionResponse, TaxRateResponse
)
from checkout_service.shipping import ShippingCalculator, ShippingRegionRepository

# Setup Logging
logger = setup_logging("checkout-service")

app = FastAPI(title="Checkout Service")

# Security Setup
setup_rate_limiting(app, enabled=checkout_settings.RATE_LIMIT_ENABLED)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="checkout-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_orchestrator(
    db: AsyncIOMotorDatabase,
    catalog: ProductCatalog,
    gateways: Dict[str, PaymentGateway],
    settings: CheckoutSettings = checkout_settings,
) -> CheckoutOrchestrator:
    cart_store = MongoCartStore(db)
    discount_codes = DiscountCodeRepository(db)
    pricing = PricingEngine(
        catalog,
        ShippingCalculator(ShippingRegionRepository(db)),
        DiscountValidator(discount_codes),
        tax_rate=settings.TAX_RATE,
        currency=settings.CURRENCY,
    )
    materializer = OrderMaterializer(
        OrderRepository(db),
        cart_store,
        pricing,
        discount_codes,
        order_number_prefix=settings.ORDER_NUMBER_PREFIX,
    )
    broker = PaymentIntentBroker(gateways, timeout=settings.GATEWAY_TIMEOUT_SECONDS)
    return CheckoutOrchestrator(cart_store, pricing, broker, materializer)


async def create_indexes(db: AsyncIOMotorDatabase):
    await OrderRepository(db).create_indexes()
    await DiscountCodeRepository(db).create_indexes()
    await db.carts.create_index("owner_key", unique=True)
    await db.shipping_regions.create_index("code", unique=True)


@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[checkout_settings.DATABASE_NAME]
    app.state.catalog = HttpProductCatalog(checkout_settings.PRODUCTS_SERVICE_URL)
    app.state.orchestrator = build_orchestrator(
        app.mongodb, app.state.catalog, build_gateways(checkout_settings)
    )
    app.state.notifications = LoggingNotificationSink()
    # Indexes
    await create_indexes(app.mongodb)

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()


# --- Error Handlers ---

@app.exception_handler(AppException)
async def app_error_handler(request: Request, exc: AppException):
    extra = {
        "request_id": getattr(request.state, "request_id", None),
        "error_code": exc.code,
        "status_code": exc.status_code,
    }
    if exc.status_code >= 500:
        logger.error(exc.detail, extra=extra)
    else:
        logger.info(exc.detail, extra=extra)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
        headers=exc.headers,
    )

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="Validation failed", details=details).model_dump(),
    )


# --- Dependencies ---

def get_orchestrator(request: Request) -> CheckoutOrchestrator:
    return request.app.state.orchestrator

def get_notification_sink(request: Request) -> NotificationSink:
    return getattr(request.app.state, "notifications", None) or LoggingNotificationSink()

def get_session_resolver() -> SessionResolver:
    return SessionResolver()

def get_session(request: Request, resolver: SessionResolver = Depends(get_session_resolver)) -> Optional[Session]:
    return resolver.resolve(request)


# --- Endpoints ---

@app.post("/checkout/validate-discount", response_model=SuccessResponse[DiscountValidationResponse])
@limiter.limit("30/minute")
async def validate_discount(
    payload: DiscountValidate,
    request: Request,
    session: Optional[Session] = Depends(get_session),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    discount, amount = await orchestrator.validate_discount(payload.code, payload.subtotal, session)
    return SuccessResponse(
        data=DiscountValidationResponse.from_discount(discount, amount),
        message="Discount code applied",
    )

@app.post("/checkout/quote", response_model=SuccessResponse[QuoteResponse])
@limiter.limit("60/minute")
async def quote(
    payload: QuoteRequest,
    request: Request,
    session: Optional[Session] = Depends(get_session),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    breakdown = await orchestrator.quote(session, payload.shipping_region_id, payload.discount_code)
    return SuccessResponse(data=QuoteResponse.from_breakdown(breakdown))

@app.get("/checkout/tax", response_model=SuccessResponse[TaxRateResponse])
async def tax_rate(orchestrator: CheckoutOrchestrator = Depends(get_orchestrator)):
    return SuccessResponse(data=TaxRateResponse(tax_rate=orchestrator.tax_rate))

@app.post("/shipping/calculate", response_model=SuccessResponse[ShippingCalculateResponse])
@limiter.limit("60/minute")
async def calculate_shipping(
    payload: ShippingCalculate,
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    region, cost = await orchestrator.calculate_shipping(payload.region_code, payload.subtotal)
    return SuccessResponse(data=ShippingCalculateResponse.from_region(region, cost))

@app.get("/shipping/regions", response_model=SuccessResponse[List[ShippingRegionResponse]])
@limiter.limit("60/minute")
async def list_shipping_regions(
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    regions = await orchestrator.list_regions()
    return SuccessResponse(data=[ShippingRegionResponse.from_region(region) for region in regions])

@app.post("/shipping/detect-region", response_model=SuccessResponse[ShippingRegionResponse])
@limiter.limit("60/minute")
async def detect_shipping_region(
    payload: RegionDetect,
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    region = await orchestrator.detect_region(payload.country)
    return SuccessResponse(data=ShippingRegionResponse.from_region(region))

@app.post("/payments/paypal/capture", response_model=SuccessResponse[CaptureResponse])
@limiter.limit("10/minute")
async def capture_paypal(
    payload: PayPalCapture,
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.capture_paypal(payload.order_id)
    return SuccessResponse(data=CaptureResponse(order_id=result["id"], status=result["status"]))

@app.post("/payments/{provider}/create-intent", response_model=SuccessResponse[IntentResponse])
@limiter.limit("10/minute")
async def create_intent(
    provider: str,
    payload: CreateIntentRequest,
    request: Request,
    session: Optional[Session] = Depends(get_session),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    intent, breakdown = await orchestrator.create_intent(
        provider, session, payload.shipping_region_id, payload.discount_code
    )
    return SuccessResponse(
        data=IntentResponse(
            provider=intent.provider,
            provider_ref=intent.reference_id,
            client_secret=intent.client_secret,
            status=intent.status,
            total=from_minor(breakdown.total),
            currency=breakdown.currency,
        )
    )

@app.post("/checkout/confirm-payment", response_model=SuccessResponse[ConfirmPaymentResponse])
@limiter.limit("10/minute")
async def confirm_payment(
    payload: ConfirmPayment,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Optional[Session] = Depends(get_session),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
    notifications: NotificationSink = Depends(get_notification_sink),
):
    result = await orchestrator.confirm(
        payload.provider,
        payload.provider_ref,
        session,
        shipping_address=payload.shipping_address.to_address() if payload.shipping_address else None,
        email=payload.email,
        order_notes=payload.order_notes,
        gift_message=payload.gift_message,
    )
    order = result.order
    if result.created:
        background_tasks.add_task(notify_order_placed, notifications, order)

    return SuccessResponse(
        data=ConfirmPaymentResponse(
            order_number=order.order_number,
            order_id=order.id,
            total=from_minor(order.total),
            currency=order.currency,
            already_processed=not result.created,
        ),
        message="Order created" if result.created else "Order already processed",
    )

@app.get("/checkout/orders", response_model=SuccessResponse[List[OrderResponse]])
@limiter.limit("30/minute")
async def list_orders(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: Optional[Session] = Depends(get_session),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    orders = await orchestrator.list_orders(session, page=page, limit=limit)
    return SuccessResponse(data=[OrderResponse.from_order(order) for order in orders])

@app.get("/checkout/orders/{order_number}", response_model=SuccessResponse[OrderResponse])
@limiter.limit("30/minute")
async def get_order(
    order_number: str,
    request: Request,
    session: Optional[Session] = Depends(get_session),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.get_order(order_number, session)
    return SuccessResponse(data=OrderResponse.from_order(order))

@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    db_status = "unhealthy"
    products_status = "unknown"

    # Check DB
    try:
        await request.app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    # Check Products Service
    catalog = getattr(request.app.state, "catalog", None)
    if isinstance(catalog, HttpProductCatalog):
        products_status = "healthy" if await catalog.ping() else "unreachable"

    overall_status = "healthy" if db_status == "connected" and products_status != "unreachable" else "unhealthy"

    if overall_status == "unhealthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="checkout-service",
        status=overall_status,
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        database=db_status,
        dependencies={"products-service": products_status}
    )
