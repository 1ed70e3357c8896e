from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _encode(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def to_document(model: BaseModel) -> dict:
    """Dump a model for Mongo. Decimals are stored as strings to keep them exact."""
    doc = _encode(model.model_dump(by_alias=True))
    if doc.get("_id") is None:
        doc.pop("_id", None)
    return doc


# --- Catalog (read-only views of the products service) ---

class ProductVariant(BaseModel):
    id: str
    name: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = None # overrides the product price when set


class Product(BaseModel):
    id: str
    name: str
    sku: Optional[str] = None
    price: Decimal
    is_active: bool = True
    variants: List[ProductVariant] = []


# --- Cart ---

class CartLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0)


class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    owner_key: str
    items: List[CartLine] = []
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)


# --- Shipping ---

class ShippingRegionDB(BaseModel):
    id: str = Field(..., alias="_id")
    code: str
    name: str
    base_cost: Decimal
    free_shipping_threshold: Optional[Decimal] = None
    active: bool = True
    countries: List[str] = []

    model_config = ConfigDict(populate_by_name=True)


# --- Discounts ---

class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class DiscountCodeDB(BaseModel):
    id: str = Field(..., alias="_id")
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: Decimal # percent points, or major units for fixed codes
    minimum_purchase: Decimal = Decimal(0)
    maximum_discount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    user_usage_limit: int = 1
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    active: bool = True

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("code")
    def normalize_code(cls, v):
        return v.strip().upper()

    @field_validator("valid_from", "valid_until")
    def assume_utc(cls, v):
        return as_utc(v)


class DiscountUsageDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    discount_code_id: str
    payment_reference_id: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    discount_amount: int
    # set once usage_count on the code has been incremented for this row
    counted: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)


# --- Orders ---

class ShippingAddress(BaseModel):
    name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    postal_code: str
    country: str
    phone: Optional[str] = None


class OrderItemDB(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    sku: Optional[str] = None
    price: int # unit price, minor units
    quantity: int
    total: int


class OrderDB(BaseModel):
    id: str = Field(..., alias="_id")
    order_number: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    cart_owner: str
    payment_provider: str
    payment_reference_id: str
    payment_status: str = "paid" # pending, paid, failed, refunded
    status: str = "paid" # paid, processing, shipped, delivered, cancelled, refunded
    subtotal: int
    shipping_cost: int
    discount_amount: int = 0
    discount_code: Optional[str] = None
    tax: int
    total: int # amount captured by the gateway
    quoted_total: int # server recomputation at materialization time
    currency: str
    shipping_region_id: Optional[str] = None
    shipping_address: ShippingAddress
    items: List[OrderItemDB]
    order_notes: Optional[str] = None
    gift_message: Optional[str] = None
    tracking_number: Optional[str] = None
    cart_cleared: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)
