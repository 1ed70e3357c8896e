"""Payment gateway port.

The contract every provider adapter implements. Adapters are handed to
the broker and the materializer as constructor arguments, so tests swap in
fakes without touching process-wide state.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from checkout_service.models import ShippingAddress
from checkout_service.pricing import PricingBreakdown


@dataclass(frozen=True)
class IntentRef:
    """Handle on a provider-side payment intent (Stripe) or order (PayPal)."""

    provider: str
    reference_id: str
    client_secret: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class PaymentConfirmation:
    """The gateway's own view of a payment, as reported at confirmation time."""

    provider: str
    reference_id: str
    status: str
    succeeded: bool
    amount: int
    currency: str
    metadata: Dict[str, str] = field(default_factory=dict)
    email: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None


class PaymentGateway(ABC):
    name: str

    @abstractmethod
    async def create_intent(self, breakdown: PricingBreakdown) -> IntentRef:
        """Create the provider-side intent for ``breakdown.total``, carrying the breakdown along."""
        ...

    @abstractmethod
    async def retrieve(self, reference_id: str) -> PaymentConfirmation:
        """Fetch the authoritative status of a payment reference."""
        ...
