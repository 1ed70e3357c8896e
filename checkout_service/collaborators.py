"""Adapters for the systems checkout depends on but does not own.

The product catalog lives in the products service, carts are kept in
the shared Mongo database, sessions come from the auth service's cookie,
and order notifications are handed to a sink that never blocks checkout.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional, List

import httpx
from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from shared.utils import ServiceUnavailableException, decode_token, settings
from checkout_service.errors import PersistenceFailure
from checkout_service.models import CartLine, OrderDB, Product, ProductVariant, utcnow

logger = logging.getLogger("checkout-service")

AUTH_COOKIE = settings.AUTH_COOKIE_NAME
SESSION_COOKIE = settings.SESSION_COOKIE_NAME


# --- Sessions ---

@dataclass(frozen=True)
class Session:
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def cart_owner(self) -> Optional[str]:
        # a signed-in user owns the cart by user id, otherwise the anonymous session does
        if self.user_id:
            return f"user:{self.user_id}"
        if self.session_id:
            return f"session:{self.session_id}"
        return None


class SessionResolver:
    def resolve(self, request: Request) -> Optional[Session]:
        session_id = request.cookies.get(SESSION_COOKIE) or None
        user_id = email = None

        token = request.cookies.get(AUTH_COOKIE)
        if token:
            payload = decode_token(token)
            if payload:
                user_id = payload.get("sub")
                email = payload.get("email")

        if not user_id and not session_id:
            return None
        return Session(user_id=user_id, session_id=session_id, email=email)


# --- Catalog ---

class ProductCatalog(ABC):
    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        """Return the product, or None when it is missing or not active."""
        ...

    def get_variant(self, product: Product, variant_id: Optional[str]) -> Optional[ProductVariant]:
        if not variant_id:
            return None
        for variant in product.variants:
            if variant.id == variant_id:
                return variant
        return None


class HttpProductCatalog(ProductCatalog):
    def __init__(self, base_url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.get(f"/products/{product_id}")
                if response.status_code == 404:
                    return None
                response.raise_for_status()
            except httpx.RequestError:
                raise ServiceUnavailableException("Products service unavailable")
            except httpx.HTTPStatusError:
                raise ServiceUnavailableException("Products service returned an error")

        product = Product(**response.json()["data"])
        if not product.is_active:
            return None
        return product

    async def ping(self) -> bool:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=2.0, transport=self.transport) as client:
            try:
                resp = await client.get("/health")
                return resp.status_code == 200
            except httpx.RequestError:
                return False


# --- Cart ---

class CartStore(ABC):
    @abstractmethod
    async def items(self, owner: str) -> List[CartLine]:
        ...

    @abstractmethod
    async def remove_lines(self, owner: str, lines: Iterable[CartLine]) -> None:
        """Take the given quantities out of the owner's cart, leaving anything added since."""
        ...


def remaining_lines(current: List[CartLine], taken: Iterable[CartLine]) -> List[CartLine]:
    left = {}
    for line in taken:
        key = (line.product_id, line.variant_id)
        left[key] = left.get(key, 0) + line.quantity

    remaining = []
    for line in current:
        key = (line.product_id, line.variant_id)
        consumed = min(left.get(key, 0), line.quantity)
        left[key] = left.get(key, 0) - consumed
        if line.quantity > consumed:
            remaining.append(line.model_copy(update={"quantity": line.quantity - consumed}))
    return remaining


class MongoCartStore(CartStore):
    # attempts before giving up on a cart that keeps changing underneath us
    UPDATE_ATTEMPTS = 3

    def __init__(self, db: AsyncIOMotorDatabase):
        self.carts = db.carts

    async def items(self, owner: str) -> List[CartLine]:
        cart = await self.carts.find_one({"owner_key": owner})
        if not cart:
            return []
        return [CartLine(**item) for item in cart.get("items", [])]

    async def remove_lines(self, owner: str, lines: Iterable[CartLine]) -> None:
        lines = list(lines)
        for _ in range(self.UPDATE_ATTEMPTS):
            cart = await self.carts.find_one({"owner_key": owner})
            if not cart:
                return
            current = [CartLine(**item) for item in cart.get("items", [])]
            remaining = remaining_lines(current, lines)
            # only write over the items we read
            result = await self.carts.update_one(
                {"owner_key": owner, "items": cart.get("items", [])},
                {"$set": {"items": [line.model_dump() for line in remaining], "updated_at": utcnow()}},
            )
            if result.matched_count:
                return
        raise PersistenceFailure("Cart changed while the order was being finalized")


# --- Notifications ---

class NotificationSink(ABC):
    @abstractmethod
    async def order_placed(self, order: OrderDB) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Hands the confirmation off to the log stream; delivery is someone else's job."""

    async def order_placed(self, order: OrderDB) -> None:
        logger.info(
            "Order confirmation queued",
            extra={"order_number": order.order_number, "user_id": order.user_id},
        )


async def notify_order_placed(sink: NotificationSink, order: OrderDB) -> None:
    try:
        await sink.order_placed(order)
    except Exception:
        # the order is already persisted; a failed notification must not surface
        logger.warning(
            "Order notification failed",
            extra={"order_number": order.order_number},
            exc_info=True,
        )
