from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input

from checkout_service.models import DiscountCodeDB, OrderDB, ShippingAddress, ShippingRegionDB
from checkout_service.money import from_minor, to_minor
from checkout_service.pricing import PricingBreakdown


class CamelModel(BaseModel):
    # camelCase on the wire, snake_case accepted on input too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Requests ---

class DiscountValidate(CamelModel):
    code: str = Field(..., min_length=1, max_length=64)
    subtotal: Decimal = Field(..., ge=0)

    @field_validator('code')
    def sanitize_code(cls, v):
        return sanitize_input(v)


class QuoteRequest(CamelModel):
    shipping_region_id: Optional[str] = None
    discount_code: Optional[str] = None

    @field_validator('shipping_region_id', 'discount_code')
    def sanitize_fields(cls, v):
        if v is None:
            return None
        # an empty string from a cleared form field means "none"
        return sanitize_input(v) or None


class CreateIntentRequest(QuoteRequest):
    pass


class ShippingAddressPayload(CamelModel):
    name: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2)
    phone: Optional[str] = None

    @field_validator('name', 'address_line1', 'address_line2', 'city', 'postal_code', 'country', 'phone')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    def to_address(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump())


class ConfirmPayment(CamelModel):
    provider: str = Field("stripe", pattern="^(stripe|paypal)$")
    provider_ref: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("providerRef", "provider_ref", "paymentIntentId", "orderId"),
    )
    shipping_address: Optional[ShippingAddressPayload] = None
    email: Optional[EmailStr] = None
    order_notes: Optional[str] = Field(None, max_length=1000)
    gift_message: Optional[str] = Field(None, max_length=500)

    @field_validator('provider_ref')
    def sanitize_ref(cls, v):
        return sanitize_input(v)

    @field_validator('order_notes', 'gift_message')
    def sanitize_notes(cls, v):
        if v is None:
            return None
        return sanitize_input(v) or None


class PayPalCapture(CamelModel):
    order_id: str = Field(..., min_length=1)

    @field_validator('order_id')
    def sanitize_order_id(cls, v):
        return sanitize_input(v)


class RegionDetect(CamelModel):
    country: str = Field(..., pattern="^[A-Za-z]{2}$")


class ShippingCalculate(CamelModel):
    region_code: str = Field(..., min_length=1)
    subtotal: Decimal = Field(..., ge=0)

    @field_validator('region_code')
    def sanitize_region_code(cls, v):
        return sanitize_input(v)


# --- Responses ---

class DiscountCodeInfo(CamelModel):
    id: str
    code: str
    type: str
    value: Decimal
    description: Optional[str] = None


class DiscountValidationResponse(CamelModel):
    valid: bool
    discount_amount: Decimal
    discount_code: DiscountCodeInfo

    @classmethod
    def from_discount(cls, discount: DiscountCodeDB, amount: int) -> "DiscountValidationResponse":
        return cls(
            valid=True,
            discount_amount=from_minor(amount),
            discount_code=DiscountCodeInfo(
                id=discount.id,
                code=discount.code,
                type=discount.discount_type.value,
                value=discount.discount_value,
                description=discount.description,
            ),
        )


class QuoteLineResponse(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    sku: Optional[str] = None
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class QuoteResponse(CamelModel):
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    tax_extracted: Decimal
    total: Decimal
    currency: str
    discount_code: Optional[str] = None
    shipping_region_id: Optional[str] = None
    discount_error: Optional[str] = None
    anomalies: List[str] = []
    lines: List[QuoteLineResponse] = []

    @classmethod
    def from_breakdown(cls, breakdown: PricingBreakdown) -> "QuoteResponse":
        return cls(
            subtotal=from_minor(breakdown.subtotal),
            shipping_cost=from_minor(breakdown.shipping_cost),
            discount_amount=from_minor(breakdown.discount_amount),
            tax_extracted=from_minor(breakdown.tax_extracted),
            total=from_minor(breakdown.total),
            currency=breakdown.currency,
            discount_code=breakdown.discount_code,
            shipping_region_id=breakdown.shipping_region_id,
            discount_error=breakdown.discount_error,
            anomalies=list(breakdown.anomalies),
            lines=[
                QuoteLineResponse(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    product_name=line.product_name,
                    variant_name=line.variant_name,
                    sku=line.sku,
                    unit_price=from_minor(line.unit_price),
                    quantity=line.quantity,
                    line_total=from_minor(line.line_total),
                )
                for line in breakdown.lines
            ],
        )


class IntentResponse(CamelModel):
    provider: str
    provider_ref: str
    client_secret: Optional[str] = None
    status: Optional[str] = None
    total: Decimal
    currency: str


class ConfirmPaymentResponse(CamelModel):
    order_number: str
    order_id: str
    total: Decimal
    currency: str
    already_processed: bool = False


class CaptureResponse(CamelModel):
    order_id: str
    status: str


class TaxRateResponse(CamelModel):
    tax_rate: Decimal


class ShippingRegionInfo(CamelModel):
    id: str
    code: str
    name: str


class ShippingRegionResponse(CamelModel):
    id: str
    code: str
    name: str
    base_cost: Decimal
    free_shipping_threshold: Optional[Decimal] = None
    countries: List[str] = []

    @classmethod
    def from_region(cls, region: ShippingRegionDB) -> "ShippingRegionResponse":
        return cls(
            id=region.id,
            code=region.code,
            name=region.name,
            base_cost=from_minor(to_minor(region.base_cost)),
            free_shipping_threshold=(
                from_minor(to_minor(region.free_shipping_threshold))
                if region.free_shipping_threshold else None
            ),
            countries=region.countries,
        )


class ShippingCalculateResponse(CamelModel):
    shipping_cost: Decimal
    region: ShippingRegionInfo

    @classmethod
    def from_region(cls, region: ShippingRegionDB, cost: int) -> "ShippingCalculateResponse":
        return cls(
            shipping_cost=from_minor(cost),
            region=ShippingRegionInfo(id=region.id, code=region.code, name=region.name),
        )


class ShippingAddressResponse(CamelModel):
    name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    postal_code: str
    country: str
    phone: Optional[str] = None


class OrderItemResponse(CamelModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    sku: Optional[str] = None
    price: Decimal
    quantity: int
    total: Decimal


class OrderResponse(CamelModel):
    id: str
    order_number: str
    status: str
    payment_status: str
    payment_provider: str
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    discount_code: Optional[str] = None
    tax: Decimal
    total: Decimal
    currency: str
    email: Optional[str] = None
    shipping_address: ShippingAddressResponse
    items: List[OrderItemResponse]
    tracking_number: Optional[str] = None
    order_notes: Optional[str] = None
    gift_message: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_order(cls, order: OrderDB) -> "OrderResponse":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            payment_provider=order.payment_provider,
            subtotal=from_minor(order.subtotal),
            shipping_cost=from_minor(order.shipping_cost),
            discount_amount=from_minor(order.discount_amount),
            discount_code=order.discount_code,
            tax=from_minor(order.tax),
            total=from_minor(order.total),
            currency=order.currency,
            email=order.email,
            shipping_address=ShippingAddressResponse(**order.shipping_address.model_dump()),
            items=[
                OrderItemResponse(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_name=item.product_name,
                    variant_name=item.variant_name,
                    sku=item.sku,
                    price=from_minor(item.price),
                    quantity=item.quantity,
                    total=from_minor(item.total),
                )
                for item in order.items
            ],
            tracking_number=order.tracking_number,
            order_notes=order.order_notes,
            gift_message=order.gift_message,
            created_at=order.created_at,
        )
