"""Stripe payment gateway adapter.

Uses PaymentIntents: the intent is created server-side for the quoted
total with the pricing breakdown attached as metadata, the browser
confirms it with the client secret, and confirmation re-reads the intent
from Stripe.
"""

import logging
from typing import Optional

import stripe

from checkout_service.errors import GatewayRejected, GatewayUnavailable
from checkout_service.gateways.port import IntentRef, PaymentConfirmation, PaymentGateway
from checkout_service.models import ShippingAddress
from checkout_service.pricing import PricingBreakdown

logger = logging.getLogger("checkout-service")

SUCCEEDED = "succeeded"


def _plain(obj) -> dict:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _shipping_address(shipping: dict) -> Optional[ShippingAddress]:
    address = _plain(shipping.get("address"))
    if not shipping.get("name") or not address:
        return None
    return ShippingAddress(
        name=shipping["name"],
        address_line1=address.get("line1") or "",
        address_line2=address.get("line2"),
        city=address.get("city") or "",
        postal_code=address.get("postal_code") or "",
        country=address.get("country") or "",
        phone=shipping.get("phone"),
    )


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key

    def _require_key(self) -> str:
        if not self.api_key:
            raise GatewayUnavailable("Stripe is not configured. Please add STRIPE_SECRET_KEY to environment variables.")
        return self.api_key

    async def create_intent(self, breakdown: PricingBreakdown) -> IntentRef:
        api_key = self._require_key()
        try:
            intent = await stripe.PaymentIntent.create_async(
                api_key=api_key,
                amount=breakdown.total,
                currency=breakdown.currency.lower(),
                metadata=breakdown.metadata(),
                automatic_payment_methods={"enabled": True},
            )
        except (stripe.APIConnectionError, stripe.AuthenticationError, stripe.RateLimitError) as exc:
            logger.error("Stripe unavailable during intent creation", extra={"provider": self.name}, exc_info=True)
            raise GatewayUnavailable(f"Stripe unavailable: {exc.user_message or exc}")
        except stripe.StripeError as exc:
            raise GatewayRejected(exc.user_message or str(exc))

        return IntentRef(
            provider=self.name,
            reference_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    async def retrieve(self, reference_id: str) -> PaymentConfirmation:
        api_key = self._require_key()
        try:
            intent = await stripe.PaymentIntent.retrieve_async(reference_id, api_key=api_key)
        except stripe.InvalidRequestError:
            raise GatewayRejected(f"Unknown payment reference '{reference_id}'")
        except stripe.StripeError as exc:
            logger.error(
                "Stripe unavailable during payment verification",
                extra={"provider": self.name, "payment_reference_id": reference_id},
                exc_info=True,
            )
            raise GatewayUnavailable(f"Stripe unavailable: {exc.user_message or exc}")

        data = _plain(intent)
        return PaymentConfirmation(
            provider=self.name,
            reference_id=data["id"],
            status=data["status"],
            succeeded=data["status"] == SUCCEEDED,
            amount=data.get("amount_received") or data["amount"],
            currency=data["currency"].upper(),
            metadata={k: str(v) for k, v in _plain(data.get("metadata")).items()},
            email=data.get("receipt_email"),
            shipping_address=_shipping_address(_plain(data.get("shipping"))),
        )
