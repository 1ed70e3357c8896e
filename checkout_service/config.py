from decimal import Decimal
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CheckoutSettings(BaseSettings):
    DATABASE_NAME: str = "checkout_db"
    PRODUCTS_SERVICE_URL: str = "http://products-service:8002"

    # Gateway credentials; absent values disable the provider at call time
    STRIPE_SECRET_KEY: Optional[str] = None
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None
    PAYPAL_BASE_URL: str = "https://api-m.sandbox.paypal.com"
    GATEWAY_TIMEOUT_SECONDS: float = Field(15.0, ge=1, le=60)

    TAX_RATE: Decimal = Field(Decimal("0.25"), ge=0, lt=1)
    CURRENCY: str = "SEK"
    ORDER_NUMBER_PREFIX: str = "GB"

    RATE_LIMIT_ENABLED: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


checkout_settings = CheckoutSettings()
