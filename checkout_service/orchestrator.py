"""Request-level coordination of the checkout pipeline.

A checkout moves QUOTING -> INTENT_CREATED -> CONFIRMING -> MATERIALIZED.
Nothing is stored between steps: the quote is recomputed on demand, the
intent lives at the gateway, and only materialization writes an order.
CONFIRMING may be entered any number of times for one payment reference
and always resolves to the same order.
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from shared.utils import NotFoundException, UnauthorizedException
from checkout_service.broker import PaymentIntentBroker
from checkout_service.collaborators import CartStore, Session
from checkout_service.discounts import DiscountValidator, compute_discount_amount
from checkout_service.errors import (
    CartEmpty,
    PaymentNotSucceeded,
    ShippingAddressRequired,
    discount_error_for,
)
from checkout_service.gateways.port import IntentRef
from checkout_service.materializer import MaterializationResult, OrderMaterializer
from checkout_service.models import DiscountCodeDB, OrderDB, ShippingAddress, ShippingRegionDB
from checkout_service.money import to_minor
from checkout_service.pricing import PricingBreakdown, PricingEngine
from checkout_service.shipping import ShippingCalculator

logger = logging.getLogger("checkout-service")

PAYPAL_APPROVED = "APPROVED"


class CheckoutState(str, Enum):
    QUOTING = "QUOTING"
    INTENT_CREATED = "INTENT_CREATED"
    CONFIRMING = "CONFIRMING"
    MATERIALIZED = "MATERIALIZED"


class CheckoutOrchestrator:
    def __init__(
        self,
        cart_store: CartStore,
        pricing: PricingEngine,
        broker: PaymentIntentBroker,
        materializer: OrderMaterializer,
    ):
        self.cart_store = cart_store
        self.pricing = pricing
        self.broker = broker
        self.materializer = materializer

    @property
    def discounts(self) -> DiscountValidator:
        return self.pricing.discounts

    @property
    def shipping(self) -> ShippingCalculator:
        return self.pricing.shipping

    @property
    def tax_rate(self) -> Decimal:
        return self.pricing.tax_rate

    async def _cart(self, session: Optional[Session]):
        owner = session.cart_owner if session else None
        if owner is None:
            return []
        return await self.cart_store.items(owner)

    # --- Quoting ---

    async def validate_discount(
        self, code: str, subtotal: Decimal, session: Optional[Session] = None
    ) -> Tuple[DiscountCodeDB, int]:
        subtotal_minor = to_minor(subtotal)
        discount = await self.discounts.validate(
            code,
            subtotal_minor,
            user_id=session.user_id if session else None,
            email=session.email if session else None,
        )
        return discount, compute_discount_amount(discount, subtotal_minor)

    async def quote(
        self,
        session: Optional[Session],
        shipping_region_id: Optional[str] = None,
        discount_code: Optional[str] = None,
    ) -> PricingBreakdown:
        lines = await self._cart(session)
        breakdown = await self.pricing.quote(
            lines,
            shipping_region_id,
            discount_code,
            user_id=session.user_id if session else None,
            email=session.email if session else None,
        )
        logger.info(
            "Quote computed",
            extra={
                "cart_owner": session.cart_owner if session else None,
                "expected_total": breakdown.total,
                "currency": breakdown.currency,
                "checkout_state": CheckoutState.QUOTING.value,
            },
        )
        return breakdown

    async def calculate_shipping(self, region_code: str, subtotal: Decimal) -> Tuple[ShippingRegionDB, int]:
        region = await self.shipping.regions.get_by_code(region_code)
        if region is None:
            raise NotFoundException("Shipping region not found")
        return region, self.shipping.cost(region, to_minor(subtotal))

    async def list_regions(self) -> List[ShippingRegionDB]:
        return await self.shipping.regions.list_active()

    async def detect_region(self, country: str) -> ShippingRegionDB:
        region = await self.shipping.regions.get_by_country(country)
        if region is None:
            raise NotFoundException("No shipping region found for this country")
        return region

    # --- Payment ---

    async def create_intent(
        self,
        provider: str,
        session: Optional[Session],
        shipping_region_id: Optional[str] = None,
        discount_code: Optional[str] = None,
    ) -> Tuple[IntentRef, PricingBreakdown]:
        self.broker.gateway(provider)

        breakdown = await self.quote(session, shipping_region_id, discount_code)
        if not breakdown.lines:
            raise CartEmpty()
        if breakdown.discount_error:
            # a quote tolerates a bad code; charging for one does not
            raise discount_error_for(breakdown.discount_error_code, breakdown.discount_error)

        intent = await self.broker.create_intent(provider, breakdown)
        return intent, breakdown

    async def capture_paypal(self, order_id: str) -> dict:
        return await self.broker.capture("paypal", order_id)

    async def confirm(
        self,
        provider: str,
        reference_id: str,
        session: Optional[Session],
        shipping_address: Optional[ShippingAddress] = None,
        email: Optional[str] = None,
        order_notes: Optional[str] = None,
        gift_message: Optional[str] = None,
    ) -> MaterializationResult:
        self.broker.gateway(provider)
        logger.info(
            "Confirming payment",
            extra={
                "provider": provider,
                "payment_reference_id": reference_id,
                "checkout_state": CheckoutState.CONFIRMING.value,
            },
        )

        # an order already recorded for this reference answers retries without touching the gateway
        found = await self.materializer.existing(reference_id)
        if found:
            return found

        payment = await self.broker.verify(provider, reference_id)
        if not payment.succeeded and payment.status == PAYPAL_APPROVED:
            await self.broker.capture(provider, reference_id)
            payment = await self.broker.verify(provider, reference_id)
        if not payment.succeeded:
            raise PaymentNotSucceeded(f"Payment not successful. Status: {payment.status}")

        owner = session.cart_owner if session else None
        if owner is None:
            raise CartEmpty("Cart is empty or order already processed.")

        address = shipping_address or payment.shipping_address
        if address is None:
            raise ShippingAddressRequired()

        email = email or (session.email if session else None) or payment.email
        return await self.materializer.materialize(
            payment,
            owner,
            address,
            email=email,
            user_id=session.user_id,
            order_notes=order_notes,
            gift_message=gift_message,
        )

    # --- Orders ---

    async def get_order(self, order_number: str, session: Optional[Session]) -> OrderDB:
        order = await self.materializer.orders.get_by_number(order_number)
        if order is None or session is None:
            raise NotFoundException("Order not found")

        owns = order.cart_owner == session.cart_owner or (
            session.user_id is not None and order.user_id == session.user_id
        )
        if not owns:
            raise NotFoundException("Order not found")
        return order

    async def list_orders(self, session: Optional[Session], page: int = 1, limit: int = 10) -> List[OrderDB]:
        """Orders of the signed-in user, newest first. Guest orders are only reachable by number."""
        if session is None or session.user_id is None:
            raise UnauthorizedException()
        return await self.materializer.orders.list_for_user(session.user_id, skip=(page - 1) * limit, limit=limit)
