"""Order materialization.

Turns a gateway-confirmed payment plus the owner's current cart into a
persisted order, exactly once per payment reference.

The payment reference id is the idempotency key and carries a unique
index in ``orders``. The order and its line items are one document, so
they are written by a single insert. The cart is cleared only after that
insert has succeeded, and the order records whether the clear happened:
a crash in between leaves the cart intact, and the next confirmation for
the same reference finds the order and finishes the clear.
"""

import dataclasses
import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from checkout_service.collaborators import CartStore
from checkout_service.discounts import DiscountCodeRepository
from checkout_service.errors import CartEmpty, PaymentNotSucceeded, PersistenceFailure, RegionNotFound
from checkout_service.gateways.port import PaymentConfirmation
from checkout_service.models import CartLine, OrderDB, OrderItemDB, ShippingAddress, to_document, utcnow
from checkout_service.pricing import PricingBreakdown, PricingEngine

logger = logging.getLogger("checkout-service")

ORDER_NUMBER_ATTEMPTS = 3


def generate_order_number(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 999):03d}"


class OrderRepository:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.orders = db.orders

    async def create_indexes(self):
        await self.orders.create_index("payment_reference_id", unique=True)
        await self.orders.create_index("order_number", unique=True)
        await self.orders.create_index("user_id")
        await self.orders.create_index("cart_owner")

    async def get_by_reference(self, payment_reference_id: str) -> Optional[OrderDB]:
        doc = await self.orders.find_one({"payment_reference_id": payment_reference_id})
        return OrderDB(**doc) if doc else None

    async def get_by_number(self, order_number: str) -> Optional[OrderDB]:
        doc = await self.orders.find_one({"order_number": order_number})
        return OrderDB(**doc) if doc else None

    async def list_for_user(self, user_id: str, skip: int = 0, limit: int = 10) -> List[OrderDB]:
        cursor = self.orders.find({"user_id": user_id}).sort("created_at", -1).skip(skip).limit(limit)
        return [OrderDB(**doc) async for doc in cursor]

    async def insert(self, order: OrderDB) -> None:
        await self.orders.insert_one(to_document(order))

    async def mark_cart_cleared(self, order_id: str) -> None:
        await self.orders.update_one(
            {"_id": order_id},
            {"$set": {"cart_cleared": True, "updated_at": utcnow()}}
        )


@dataclass(frozen=True)
class MaterializationResult:
    order: OrderDB
    created: bool


class OrderMaterializer:
    def __init__(
        self,
        orders: OrderRepository,
        cart_store: CartStore,
        pricing: PricingEngine,
        discounts: DiscountCodeRepository,
        order_number_prefix: str = "GB",
    ):
        self.orders = orders
        self.cart_store = cart_store
        self.pricing = pricing
        self.discounts = discounts
        self.order_number_prefix = order_number_prefix

    async def existing(self, payment_reference_id: str) -> Optional[MaterializationResult]:
        """The already-materialized order for a reference, with any pending cart clear finished."""
        try:
            order = await self.orders.get_by_reference(payment_reference_id)
            if order is None:
                return None
            if not order.cart_cleared:
                order = await self._clear_cart(order)
        except PyMongoError:
            logger.error(
                "Order lookup failed",
                extra={"payment_reference_id": payment_reference_id},
                exc_info=True,
            )
            raise PersistenceFailure()
        return MaterializationResult(order=order, created=False)

    async def materialize(
        self,
        payment: PaymentConfirmation,
        cart_owner: str,
        shipping_address: ShippingAddress,
        email: Optional[str] = None,
        user_id: Optional[str] = None,
        order_notes: Optional[str] = None,
        gift_message: Optional[str] = None,
    ) -> MaterializationResult:
        if not payment.succeeded:
            raise PaymentNotSucceeded(f"Payment not successful. Status: {payment.status}")

        try:
            return await self._materialize(
                payment, cart_owner, shipping_address, email, user_id, order_notes, gift_message
            )
        except PyMongoError:
            logger.error(
                "Order persistence failed",
                extra={"payment_reference_id": payment.reference_id, "provider": payment.provider},
                exc_info=True,
            )
            raise PersistenceFailure()

    async def _materialize(
        self,
        payment: PaymentConfirmation,
        cart_owner: str,
        shipping_address: ShippingAddress,
        email: Optional[str],
        user_id: Optional[str],
        order_notes: Optional[str],
        gift_message: Optional[str],
    ) -> MaterializationResult:
        reference_id = payment.reference_id

        found = await self.existing(reference_id)
        if found:
            return found

        lines = await self.cart_store.items(cart_owner)
        if not lines:
            # a concurrent confirmation may have materialized and cleared the cart meanwhile
            found = await self.existing(reference_id)
            if found:
                return found
            raise CartEmpty("Cart is empty or order already processed.")

        breakdown = await self._requote(payment, lines, user_id, email)
        breakdown = await self._claim_discount(breakdown, reference_id, user_id, email)

        if breakdown.total != payment.amount or breakdown.currency != payment.currency:
            # the captured amount stands; the divergence is kept on the order for review
            logger.warning(
                "Payment amount mismatch",
                extra={
                    "payment_reference_id": reference_id,
                    "provider": payment.provider,
                    "expected_total": breakdown.total,
                    "confirmed_total": payment.amount,
                    "currency": payment.currency,
                },
            )

        order = OrderDB(
            _id=str(uuid.uuid4()),
            order_number=generate_order_number(self.order_number_prefix),
            user_id=user_id,
            email=email,
            cart_owner=cart_owner,
            payment_provider=payment.provider,
            payment_reference_id=reference_id,
            subtotal=breakdown.subtotal,
            shipping_cost=breakdown.shipping_cost,
            discount_amount=breakdown.discount_amount,
            discount_code=breakdown.discount_code,
            tax=breakdown.tax_extracted,
            total=payment.amount,
            quoted_total=breakdown.total,
            currency=payment.currency or breakdown.currency,
            shipping_region_id=breakdown.shipping_region_id,
            shipping_address=shipping_address,
            order_notes=order_notes,
            gift_message=gift_message,
            items=[
                OrderItemDB(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    product_name=line.product_name,
                    variant_name=line.variant_name,
                    sku=line.sku,
                    price=line.unit_price,
                    quantity=line.quantity,
                    total=line.line_total,
                )
                for line in breakdown.lines
            ],
        )

        for _ in range(ORDER_NUMBER_ATTEMPTS):
            try:
                await self.orders.insert(order)
                break
            except DuplicateKeyError:
                winner = await self.orders.get_by_reference(reference_id)
                if winner is not None:
                    # lost the race for this reference; the winner owns the cart clear
                    return MaterializationResult(order=winner, created=False)
                order = order.model_copy(update={"order_number": generate_order_number(self.order_number_prefix)})
        else:
            raise PersistenceFailure("Could not allocate a unique order number")

        order = await self._clear_cart(order, lines)
        logger.info(
            "Order materialized",
            extra={
                "order_number": order.order_number,
                "payment_reference_id": reference_id,
                "provider": payment.provider,
                "cart_owner": cart_owner,
                "confirmed_total": payment.amount,
                "checkout_state": "MATERIALIZED",
            },
        )
        return MaterializationResult(order=order, created=True)

    async def _requote(self, payment: PaymentConfirmation, lines, user_id, email) -> PricingBreakdown:
        region_id = payment.metadata.get("shippingRegionId") or None
        code = payment.metadata.get("discountCode") or None
        try:
            return await self.pricing.quote(
                lines, region_id, code, user_id=user_id, email=email, check_usage=False
            )
        except RegionNotFound:
            # the customer has paid; a region retired since intent creation must not block the order
            logger.warning(
                "Shipping region vanished before materialization",
                extra={"payment_reference_id": payment.reference_id},
            )
            return await self.pricing.quote(lines, None, code, user_id=user_id, email=email, check_usage=False)

    async def _claim_discount(self, breakdown: PricingBreakdown, reference_id: str, user_id, email) -> PricingBreakdown:
        if breakdown.discount is None or breakdown.discount_amount <= 0:
            return breakdown

        claimed = await self.discounts.claim_usage(
            breakdown.discount,
            reference_id,
            breakdown.discount_amount,
            user_id=user_id,
            email=email,
        )
        if claimed:
            return breakdown

        logger.warning(
            "Discount use lost at materialization; order recorded without it",
            extra={"payment_reference_id": reference_id, "discount_code": breakdown.discount_code},
        )
        return dataclasses.replace(
            breakdown,
            discount_amount=0,
            discount_code=None,
            discount=None,
            total=breakdown.subtotal + breakdown.shipping_cost,
        )

    async def _clear_cart(self, order: OrderDB, lines: Optional[List[CartLine]] = None) -> OrderDB:
        if lines is None:
            # finishing an interrupted clear: take out only what the order bought
            lines = [
                CartLine(product_id=item.product_id, variant_id=item.variant_id, quantity=item.quantity)
                for item in order.items
            ]
        await self.cart_store.remove_lines(order.cart_owner, lines)
        await self.orders.mark_cart_cleared(order.id)
        return order.model_copy(update={"cart_cleared": True})
