"""PayPal payment gateway adapter (Orders v2 REST API over httpx).

Flow: create an order for the quoted total with an itemised breakdown,
the buyer approves it in the PayPal popup, the client asks us to capture
it, and confirmation re-reads the order and requires ``COMPLETED``.
"""

import json
import logging
from typing import Optional

import httpx

from checkout_service.errors import GatewayRejected, GatewayUnavailable
from checkout_service.gateways.port import IntentRef, PaymentConfirmation, PaymentGateway
from checkout_service.models import ShippingAddress
from checkout_service.money import format_amount, to_minor
from checkout_service.pricing import PricingBreakdown

logger = logging.getLogger("checkout-service")

COMPLETED = "COMPLETED"


def _money(amount: int, currency: str) -> dict:
    return {"currency_code": currency, "value": format_amount(amount)}


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    return body.get("message") or body.get("error_description") or body.get("error") or default


def _shipping_address(shipping: dict) -> Optional[ShippingAddress]:
    address = shipping.get("address") or {}
    name = (shipping.get("name") or {}).get("full_name")
    if not name or not address:
        return None
    return ShippingAddress(
        name=name,
        address_line1=address.get("address_line_1", ""),
        address_line2=address.get("address_line_2"),
        city=address.get("admin_area_2", ""),
        postal_code=address.get("postal_code", ""),
        country=address.get("country_code", ""),
    )


class PayPalGateway(PaymentGateway):
    name = "paypal"

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if not self.client_id or not self.client_secret:
            raise GatewayUnavailable("PayPal is not configured. Please add PayPal credentials to environment variables.")

        response = await client.post(
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        if response.is_error:
            raise GatewayUnavailable(_error_message(response, "Failed to get PayPal access token"))
        return response.json()["access_token"]

    async def _call(self, method: str, path: str, payload: Optional[dict] = None) -> httpx.Response:
        async with self._client() as client:
            try:
                token = await self._access_token(client)
                response = await client.request(
                    method,
                    path,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                )
            except httpx.RequestError as exc:
                logger.error("PayPal unreachable", extra={"provider": self.name, "path": path}, exc_info=True)
                raise GatewayUnavailable(f"PayPal unavailable: {exc.__class__.__name__}")

        if response.status_code >= 500:
            raise GatewayUnavailable(_error_message(response, "PayPal unavailable"))
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = None
            raise GatewayRejected(_error_message(response, "PayPal rejected the request"), details=body)
        return response

    async def create_intent(self, breakdown: PricingBreakdown) -> IntentRef:
        currency = breakdown.currency
        amount_breakdown = {"item_total": _money(breakdown.subtotal, currency)}
        if breakdown.shipping_cost > 0:
            amount_breakdown["shipping"] = _money(breakdown.shipping_cost, currency)
        if breakdown.discount_amount > 0:
            amount_breakdown["discount"] = _money(breakdown.discount_amount, currency)

        purchase_unit = {
            "amount": {**_money(breakdown.total, currency), "breakdown": amount_breakdown},
            "custom_id": json.dumps(
                {
                    "shippingRegionId": breakdown.shipping_region_id or "",
                    "discountCode": breakdown.discount_code or "",
                },
                separators=(",", ":"),
            ),
        }
        if breakdown.lines:
            purchase_unit["items"] = [
                {
                    "name": line.product_name[:127],
                    "quantity": str(line.quantity),
                    "unit_amount": _money(line.unit_price, currency),
                    **({"sku": line.sku} if line.sku else {}),
                }
                for line in breakdown.lines
            ]

        response = await self._call(
            "POST",
            "/v2/checkout/orders",
            {"intent": "CAPTURE", "purchase_units": [purchase_unit]},
        )
        data = response.json()
        return IntentRef(provider=self.name, reference_id=data["id"], status=data.get("status"))

    async def capture(self, order_id: str) -> dict:
        response = await self._call("POST", f"/v2/checkout/orders/{order_id}/capture")
        data = response.json()
        return {"id": data["id"], "status": data["status"]}

    async def retrieve(self, reference_id: str) -> PaymentConfirmation:
        response = await self._call("GET", f"/v2/checkout/orders/{reference_id}")
        data = response.json()

        unit = (data.get("purchase_units") or [{}])[0]
        captures = (unit.get("payments") or {}).get("captures") or []
        amount = captures[0]["amount"] if captures else unit.get("amount", {})

        metadata = {}
        if unit.get("custom_id"):
            try:
                custom = json.loads(unit["custom_id"])
            except ValueError:
                custom = None
            if isinstance(custom, dict):
                metadata = {k: str(v) for k, v in custom.items() if v is not None}
            else:
                logger.warning(
                    "Unreadable PayPal custom_id",
                    extra={"provider": self.name, "payment_reference_id": reference_id},
                )

        return PaymentConfirmation(
            provider=self.name,
            reference_id=data["id"],
            status=data["status"],
            succeeded=data["status"] == COMPLETED,
            amount=to_minor(amount.get("value", "0")),
            currency=amount.get("currency_code", ""),
            metadata=metadata,
            email=(data.get("payer") or {}).get("email_address"),
            shipping_address=_shipping_address(unit.get("shipping") or {}),
        )
