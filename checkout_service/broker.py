import asyncio
import logging
from typing import Awaitable, Dict, Optional, TypeVar

from checkout_service.errors import GatewayRejected, GatewayUnavailable, UnknownProvider
from checkout_service.gateways.port import IntentRef, PaymentConfirmation, PaymentGateway
from checkout_service.pricing import PricingBreakdown

logger = logging.getLogger("checkout-service")

T = TypeVar("T")


class PaymentIntentBroker:
    """Single entry point for every gateway call made during checkout.

    Each call is bounded by ``timeout``. A timeout is reported as
    ``GatewayUnavailable`` rather than a payment failure: the gateway may
    have processed the request, so the caller must be free to retry.
    No local state is written here; an intent lives only at the gateway
    until it is confirmed.
    """

    def __init__(self, gateways: Dict[str, PaymentGateway], timeout: float):
        self.gateways = gateways
        self.timeout = timeout

    def gateway(self, provider: str) -> PaymentGateway:
        try:
            return self.gateways[provider]
        except KeyError:
            raise UnknownProvider(f"Unknown payment provider '{provider}'")

    async def _bounded(self, provider: str, call: Awaitable[T], reference_id: Optional[str] = None) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Payment gateway timed out",
                extra={"provider": provider, "payment_reference_id": reference_id},
            )
            raise GatewayUnavailable(f"{provider} did not respond in time; it is safe to retry")

    async def create_intent(self, provider: str, breakdown: PricingBreakdown) -> IntentRef:
        gateway = self.gateway(provider)
        if breakdown.total <= 0:
            raise GatewayRejected("Invalid order total. Amount must be greater than zero.")

        intent = await self._bounded(provider, gateway.create_intent(breakdown))
        logger.info(
            "Payment intent created",
            extra={
                "provider": provider,
                "payment_reference_id": intent.reference_id,
                "expected_total": breakdown.total,
                "currency": breakdown.currency,
                "checkout_state": "INTENT_CREATED",
            },
        )
        return intent

    async def verify(self, provider: str, reference_id: str) -> PaymentConfirmation:
        gateway = self.gateway(provider)
        return await self._bounded(provider, gateway.retrieve(reference_id), reference_id)

    async def capture(self, provider: str, reference_id: str) -> dict:
        gateway = self.gateway(provider)
        capture = getattr(gateway, "capture", None)
        if capture is None:
            raise GatewayRejected(f"{provider} payments are not captured separately")
        result = await self._bounded(provider, capture(reference_id), reference_id)
        logger.info(
            "Payment captured",
            extra={"provider": provider, "payment_reference_id": reference_id},
        )
        return result
