"""Payment gateway adapters.

``build_gateways`` wires the production adapters from settings; tests
pass their own mapping of provider name to gateway instead.
"""

from typing import Dict

from checkout_service.config import CheckoutSettings
from checkout_service.gateways.paypal_adapter import PayPalGateway
from checkout_service.gateways.port import IntentRef, PaymentConfirmation, PaymentGateway
from checkout_service.gateways.stripe_adapter import StripeGateway


def build_gateways(settings: CheckoutSettings) -> Dict[str, PaymentGateway]:
    return {
        "stripe": StripeGateway(settings.STRIPE_SECRET_KEY),
        "paypal": PayPalGateway(
            settings.PAYPAL_CLIENT_ID,
            settings.PAYPAL_CLIENT_SECRET,
            settings.PAYPAL_BASE_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        ),
    }


__all__ = [
    "IntentRef",
    "PaymentConfirmation",
    "PaymentGateway",
    "PayPalGateway",
    "StripeGateway",
    "build_gateways",
]
