"""Cart pricing.

``PricingEngine.quote`` turns cart lines into an immutable
``PricingBreakdown``. Unit prices are tax-inclusive, so tax is extracted
from the subtotal for the record and never added to the total:

    total = subtotal - discount_amount + shipping_cost
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, Optional, Tuple

from checkout_service.collaborators import ProductCatalog
from checkout_service.discounts import DiscountValidator, compute_discount_amount
from checkout_service.errors import DiscountError
from checkout_service.models import CartLine, DiscountCodeDB
from checkout_service.money import extract_tax, format_amount, to_minor
from checkout_service.shipping import ShippingCalculator

logger = logging.getLogger("checkout-service")

NEGATIVE_TOTAL_CLAMPED = "negative_total_clamped"


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    variant_id: Optional[str]
    product_name: str
    variant_name: Optional[str]
    sku: Optional[str]
    unit_price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: int
    shipping_cost: int
    discount_amount: int
    tax_extracted: int
    total: int
    currency: str
    discount_code: Optional[str] = None
    shipping_region_id: Optional[str] = None
    lines: Tuple[PricedLine, ...] = ()
    discount: Optional[DiscountCodeDB] = field(default=None, repr=False, compare=False)
    discount_error: Optional[str] = None
    discount_error_code: Optional[str] = None
    anomalies: Tuple[str, ...] = ()

    def metadata(self) -> Dict[str, str]:
        """Pricing context as flat strings, the shape gateway metadata accepts."""
        return {
            "subtotal": format_amount(self.subtotal),
            "shipping": format_amount(self.shipping_cost),
            "tax": format_amount(self.tax_extracted),
            "discount": format_amount(self.discount_amount),
            "discountCode": self.discount_code or "",
            "shippingRegionId": self.shipping_region_id or "",
        }


class PricingEngine:
    def __init__(
        self,
        catalog: ProductCatalog,
        shipping: ShippingCalculator,
        discounts: DiscountValidator,
        tax_rate: Decimal,
        currency: str,
    ):
        self.catalog = catalog
        self.shipping = shipping
        self.discounts = discounts
        self.tax_rate = tax_rate
        self.currency = currency

    async def price_lines(self, cart_lines: Iterable[CartLine]) -> Tuple[PricedLine, ...]:
        priced = []
        for line in cart_lines:
            product = await self.catalog.get_product(line.product_id)
            if product is None:
                # deleted or deactivated since it was added; the UI should not have offered it
                logger.info("Dropping unavailable product %s from quote", line.product_id)
                continue

            variant = self.catalog.get_variant(product, line.variant_id)
            price = variant.price if variant is not None and variant.price is not None else product.price
            priced.append(PricedLine(
                product_id=product.id,
                variant_id=variant.id if variant else None,
                product_name=product.name,
                variant_name=variant.name if variant else None,
                sku=(variant.sku if variant else None) or product.sku,
                unit_price=to_minor(price),
                quantity=line.quantity,
            ))
        return tuple(priced)

    async def quote(
        self,
        cart_lines: Iterable[CartLine],
        shipping_region_id: Optional[str] = None,
        discount_code: Optional[str] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        check_usage: bool = True,
    ) -> PricingBreakdown:
        lines = await self.price_lines(cart_lines)
        subtotal = sum(line.line_total for line in lines)

        discount = None
        discount_amount = 0
        discount_error = discount_error_code = None
        if discount_code:
            try:
                discount = await self.discounts.validate(
                    discount_code, subtotal, user_id=user_id, email=email, check_usage=check_usage
                )
                discount_amount = compute_discount_amount(discount, subtotal)
            except DiscountError as exc:
                discount_error = exc.detail
                discount_error_code = exc.code

        # shipping thresholds apply to the pre-discount subtotal
        shipping_cost = await self.shipping.cost_for(shipping_region_id, subtotal)
        tax = extract_tax(subtotal, self.tax_rate)
        total = subtotal - discount_amount + shipping_cost

        anomalies = ()
        if total < 0:
            logger.warning(
                "Pricing anomaly: negative total clamped to zero",
                extra={"discount_code": discount.code if discount else None, "expected_total": total},
            )
            discount_amount = subtotal + shipping_cost
            total = 0
            anomalies = (NEGATIVE_TOTAL_CLAMPED,)

        return PricingBreakdown(
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            discount_amount=discount_amount,
            tax_extracted=tax,
            total=total,
            currency=self.currency,
            discount_code=discount.code if discount else None,
            shipping_region_id=shipping_region_id,
            lines=lines,
            discount=discount,
            discount_error=discount_error,
            discount_error_code=discount_error_code,
            anomalies=anomalies,
        )
