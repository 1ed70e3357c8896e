import itertools
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from shared.security_config import limiter
from shared.utils import create_access_token
from checkout_service.collaborators import AUTH_COOKIE, SESSION_COOKIE, NotificationSink, ProductCatalog
from checkout_service.config import CheckoutSettings
from checkout_service.errors import GatewayRejected
from checkout_service.gateways.port import IntentRef, PaymentConfirmation, PaymentGateway
from checkout_service.main import app, build_orchestrator, create_indexes, get_notification_sink, get_orchestrator
from checkout_service.models import (
    CartDB,
    CartLine,
    DiscountCodeDB,
    DiscountType,
    OrderDB,
    Product,
    ProductVariant,
    ShippingAddress,
    ShippingRegionDB,
    to_document,
    utcnow,
)
from checkout_service.pricing import PricingBreakdown

SESSION_ID = "sess-1"
SESSION_OWNER = f"session:{SESSION_ID}"

ADDRESS = ShippingAddress(
    name="Ada Lovelace",
    address_line1="Storgatan 1",
    city="Stockholm",
    postal_code="11122",
    country="SE",
)


# --- Fakes ---

class FakeCatalog(ProductCatalog):
    def __init__(self, products: List[Product]):
        self.products = {p.id: p for p in products}

    async def get_product(self, product_id: str) -> Optional[Product]:
        product = self.products.get(product_id)
        if product is None or not product.is_active:
            return None
        return product


class FakeGateway(PaymentGateway):
    """In-memory gateway: intents are created pending and completed by the test."""

    def __init__(self, name: str, success_status: str):
        self.name = name
        self.success_status = success_status
        self.intents: Dict[str, dict] = {}
        self.retrieve_calls = 0
        self.captured: List[str] = []
        self._ids = itertools.count(1)

    async def create_intent(self, breakdown: PricingBreakdown) -> IntentRef:
        ref = f"{self.name}_ref_{next(self._ids)}"
        self.intents[ref] = {
            "status": "requires_payment_method",
            "amount": breakdown.total,
            "currency": breakdown.currency,
            "metadata": breakdown.metadata(),
            "email": None,
            "shipping_address": None,
        }
        return IntentRef(provider=self.name, reference_id=ref, client_secret=f"{ref}_secret", status="created")

    def complete(self, ref: str, **changes):
        self.intents[ref].update({"status": self.success_status, **changes})

    async def capture(self, ref: str) -> dict:
        self.captured.append(ref)
        self.intents[ref]["status"] = self.success_status
        return {"id": ref, "status": self.success_status}

    async def retrieve(self, reference_id: str) -> PaymentConfirmation:
        self.retrieve_calls += 1
        intent = self.intents.get(reference_id)
        if intent is None:
            raise GatewayRejected(f"Unknown payment reference '{reference_id}'")
        return PaymentConfirmation(
            provider=self.name,
            reference_id=reference_id,
            status=intent["status"],
            succeeded=intent["status"] == self.success_status,
            amount=intent["amount"],
            currency=intent["currency"],
            metadata=dict(intent["metadata"]),
            email=intent["email"],
            shipping_address=intent["shipping_address"],
        )


class RecordingSink(NotificationSink):
    def __init__(self):
        self.orders: List[OrderDB] = []

    async def order_placed(self, order: OrderDB) -> None:
        self.orders.append(order)


# --- Seed data ---

PRODUCTS = [
    Product(
        id="prod-hoodie",
        name="Hoodie",
        sku="HD-001",
        price=Decimal("400.00"),
        variants=[ProductVariant(id="var-xl", name="XL", sku="HD-001-XL", price=Decimal("450.00"))],
    ),
    Product(id="prod-poster", name="Poster", sku="PS-001", price=Decimal("100.00")),
    Product(id="prod-retired", name="Retired Mug", price=Decimal("80.00"), is_active=False),
]

REGIONS = [
    ShippingRegionDB(
        _id="region-se",
        code="SE",
        name="Sweden",
        base_cost=Decimal("50"),
        free_shipping_threshold=Decimal("1000"),
        countries=["SE"],
    ),
    ShippingRegionDB(_id="region-eu", code="EU", name="Europe", base_cost=Decimal("99"), countries=["DE", "FR"]),
    ShippingRegionDB(_id="region-no", code="NO", name="Norway", base_cost=Decimal("120"), active=False),
]


def discount_codes():
    now = utcnow()
    return [
        DiscountCodeDB(_id="dc-save100", code="SAVE100", discount_type=DiscountType.FIXED, discount_value=Decimal("100")),
        DiscountCodeDB(
            _id="dc-tenoff",
            code="TENOFF",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            maximum_discount=Decimal("50"),
        ),
        DiscountCodeDB(
            _id="dc-once",
            code="ONCE",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("100"),
            usage_limit=1,
        ),
        DiscountCodeDB(
            _id="dc-double",
            code="DOUBLE",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("150"),
        ),
        DiscountCodeDB(
            _id="dc-min",
            code="MIN2000",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("200"),
            minimum_purchase=Decimal("2000"),
        ),
        DiscountCodeDB(
            _id="dc-expired",
            code="EXPIRED",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("50"),
            valid_until=now - timedelta(days=1),
        ),
        DiscountCodeDB(
            _id="dc-future",
            code="FUTURE",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("50"),
            valid_from=now + timedelta(days=1),
        ),
        DiscountCodeDB(
            _id="dc-inactive",
            code="INACTIVE",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("50"),
            active=False,
        ),
    ]


async def put_cart(db, owner: str, *lines: CartLine):
    cart = CartDB(owner_key=owner, items=list(lines))
    await db.carts.replace_one({"owner_key": owner}, to_document(cart), upsert=True)


def hoodies(quantity: int = 2) -> CartLine:
    return CartLine(product_id="prod-hoodie", quantity=quantity)


# --- Fixtures ---

@pytest.fixture
def settings():
    return CheckoutSettings(
        TAX_RATE=Decimal("0.25"),
        CURRENCY="SEK",
        ORDER_NUMBER_PREFIX="GB",
        GATEWAY_TIMEOUT_SECONDS=5,
        RATE_LIMIT_ENABLED=False,
    )


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["checkout_test"]
    await create_indexes(database)
    for region in REGIONS:
        await database.shipping_regions.insert_one(to_document(region))
    for code in discount_codes():
        await database.discount_codes.insert_one(to_document(code))
    return database


@pytest.fixture
def catalog():
    return FakeCatalog(PRODUCTS)


@pytest.fixture
def stripe_gateway():
    return FakeGateway("stripe", "succeeded")


@pytest.fixture
def paypal_gateway():
    return FakeGateway("paypal", "COMPLETED")


@pytest.fixture
def orchestrator(db, catalog, stripe_gateway, paypal_gateway, settings):
    return build_orchestrator(db, catalog, {"stripe": stripe_gateway, "paypal": paypal_gateway}, settings)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def client(orchestrator, sink):
    limiter.enabled = False
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_notification_sink] = lambda: sink
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={SESSION_COOKIE: SESSION_ID},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def user_token():
    return create_access_token({"sub": "user-1", "email": "ada@example.com"})


@pytest.fixture
async def user_client(orchestrator, sink, user_token):
    limiter.enabled = False
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_notification_sink] = lambda: sink
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={AUTH_COOKIE: user_token},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
