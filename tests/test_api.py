from datetime import timedelta

import pytest

from checkout_service.errors import GatewayUnavailable
from checkout_service.models import utcnow

from conftest import ADDRESS, SESSION_OWNER, hoodies, put_cart

ADDRESS_JSON = {
    "name": ADDRESS.name,
    "addressLine1": ADDRESS.address_line1,
    "city": ADDRESS.city,
    "postalCode": ADDRESS.postal_code,
    "country": ADDRESS.country,
}


async def pay(client, gateway, provider="stripe", **body):
    response = await client.post(f"/payments/{provider}/create-intent", json=body)
    assert response.status_code == 200, response.text
    ref = response.json()["data"]["providerRef"]
    gateway.complete(ref)
    return ref


# --- Quoting ---

async def test_quote(client, db):
    await put_cart(db, SESSION_OWNER, hoodies(2))

    response = await client.post("/checkout/quote", json={"shippingRegionId": "region-se"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["subtotal"] == "800.00"
    assert data["shippingCost"] == "50.00"
    assert data["taxExtracted"] == "160.00"
    assert data["total"] == "850.00"
    assert data["currency"] == "SEK"
    assert data["lines"][0]["productName"] == "Hoodie"
    assert data["lines"][0]["lineTotal"] == "800.00"


async def test_quote_accepts_snake_case_and_reports_bad_codes(client, db):
    await put_cart(db, SESSION_OWNER, hoodies(2))

    response = await client.post(
        "/checkout/quote", json={"shipping_region_id": "region-se", "discount_code": "nope"}
    )

    data = response.json()["data"]
    assert data["total"] == "850.00"
    assert data["discountAmount"] == "0.00"
    assert data["discountError"] == "Discount code not found"


async def test_quote_with_unknown_region(client, db):
    await put_cart(db, SESSION_OWNER, hoodies(2))

    response = await client.post("/checkout/quote", json={"shippingRegionId": "region-mars"})

    assert response.status_code == 400
    assert response.json()["details"]["code"] == "region_not_found"


async def test_validate_discount(client):
    response = await client.post("/checkout/validate-discount", json={"code": "save100", "subtotal": 800})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["valid"] is True
    assert data["discountAmount"] == "100.00"
    assert data["discountCode"] == {
        "id": "dc-save100",
        "code": "SAVE100",
        "type": "fixed",
        "value": "100",
        "description": None,
    }


@pytest.mark.parametrize(
    "code, error_code, message",
    [
        ("NOPE", "code_not_found", "Discount code not found"),
        ("EXPIRED", "code_expired", "Discount code has expired"),
        ("MIN2000", "minimum_purchase_not_met", "Minimum purchase of 2000.00 required"),
    ],
)
async def test_validate_discount_errors(client, code, error_code, message):
    response = await client.post("/checkout/validate-discount", json={"code": code, "subtotal": "800.00"})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == message
    assert body["details"]["code"] == error_code


async def test_request_bodies_are_validated_first(client):
    response = await client.post("/checkout/validate-discount", json={"subtotal": -5})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation failed"
    fields = {detail["field"] for detail in body["details"]}
    assert fields == {"code", "subtotal"}


async def test_tax_rate(client):
    response = await client.get("/checkout/tax")
    assert response.json()["data"] == {"taxRate": "0.25"}


async def test_shipping_calculate(client):
    response = await client.post("/shipping/calculate", json={"regionCode": "SE", "subtotal": 800})

    data = response.json()["data"]
    assert data["shippingCost"] == "50.00"
    assert data["region"] == {"id": "region-se", "code": "SE", "name": "Sweden"}

    free = await client.post("/shipping/calculate", json={"regionCode": "SE", "subtotal": 1000})
    assert free.json()["data"]["shippingCost"] == "0.00"


async def test_shipping_calculate_unknown_region(client):
    response = await client.post("/shipping/calculate", json={"regionCode": "NO", "subtotal": 800})
    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "Shipping region not found",
        "details": {"code": "not_found"},
    }


# --- Payment ---

async def test_create_intent(client, db, stripe_gateway):
    await put_cart(db, SESSION_OWNER, hoodies(2))

    response = await client.post(
        "/payments/stripe/create-intent", json={"shippingRegionId": "region-se", "discountCode": "SAVE100"}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["provider"] == "stripe"
    assert data["clientSecret"] == f"{data['providerRef']}_secret"
    assert data["total"] == "750.00"
    intent = stripe_gateway.intents[data["providerRef"]]
    assert intent["amount"] == 75000
    assert intent["metadata"]["discountCode"] == "SAVE100"


async def test_create_intent_with_empty_cart(client):
    response = await client.post("/payments/stripe/create-intent", json={})

    assert response.status_code == 400
    assert response.json()["details"]["code"] == "cart_empty"


async def test_create_intent_unknown_provider(client, db):
    await put_cart(db, SESSION_OWNER, hoodies(2))

    response = await client.post("/payments/klarna/create-intent", json={})

    assert response.status_code == 404
    assert response.json()["details"]["code"] == "unknown_provider"


async def test_gateway_outage_is_a_server_error(client, db, stripe_gateway, monkeypatch):
    await put_cart(db, SESSION_OWNER, hoodies(2))

    async def unavailable(breakdown):
        raise GatewayUnavailable("Stripe is not configured. Please add STRIPE_SECRET_KEY to environment variables.")

    monkeypatch.setattr(stripe_gateway, "create_intent", unavailable)
    response = await client.post("/payments/stripe/create-intent", json={})

    assert response.status_code == 500
    assert response.json()["details"]["code"] == "gateway_unavailable"


async def test_confirm_payment(client, db, stripe_gateway, sink):
    await put_cart(db, SESSION_OWNER, hoodies(2))
    ref = await pay(client, stripe_gateway, shippingRegionId="region-se")

    response = await client.post(
        "/checkout/confirm-payment",
        json={"providerRef": ref, "shippingAddress": ADDRESS_JSON, "email": "ada@example.com"},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["message"] == "Order created"
    data = body["data"]
    assert data["orderNumber"].startswith("GB-")
    assert data["total"] == "850.00"
    assert data["alreadyProcessed"] is False
    assert [order.order_number for order in sink.orders] == [data["orderNumber"]]

    cart = await db.carts.find_one({"owner_key": SESSION_OWNER})
    assert cart["items"] == []


async def test_confirm_payment_is_idempotent(client, db, stripe_gateway, sink):
    await put_cart(db, SESSION_OWNER, hoodies(2))
    ref = await pay(client, stripe_gateway, shippingRegionId="region-se")
    payload = {"paymentIntentId": ref, "shippingAddress": ADDRESS_JSON}

    first = await client.post("/checkout/confirm-payment", json=payload)
    second = await client.post("/checkout/confirm-payment", json=payload)

    assert first.json()["data"]["orderNumber"] == second.json()["data"]["orderNumber"]
    assert second.json()["data"]["alreadyProcessed"] is True
    assert second.json()["message"] == "Order already processed"
    assert await db.orders.count_documents({}) == 1
    assert len(sink.orders) == 1


async def test_confirm_with_empty_cart(client, db, stripe_gateway):
    await put_cart(db, SESSION_OWNER, hoodies(2))
    ref = await pay(client, stripe_gateway)
    await put_cart(db, SESSION_OWNER)

    response = await client.post(
        "/checkout/confirm-payment", json={"providerRef": ref, "shippingAddress": ADDRESS_JSON}
    )

    assert response.status_code == 400
    assert response.json()["details"]["code"] == "cart_empty"
    assert await db.orders.count_documents({}) == 0


async def test_confirm_unpaid(client, db):
    await put_cart(db, SESSION_OWNER, hoodies(2))
    intent = await client.post("/payments/stripe/create-intent", json={})
    ref = intent.json()["data"]["providerRef"]

    response = await client.post(
        "/checkout/confirm-payment", json={"providerRef": ref, "shippingAddress": ADDRESS_JSON}
    )

    assert response.status_code == 400
    assert response.json()["details"]["code"] == "payment_not_succeeded"


async def test_confirm_without_address(client, db, stripe_gateway):
    await put_cart(db, SESSION_OWNER, hoodies(2))
    ref = await pay(client, stripe_gateway)

    response = await client.post("/checkout/confirm-payment", json={"providerRef": ref})

    assert response.status_code == 400
    assert response.json()["details"]["code"] == "shipping_address_required"


async def test_paypal_capture_then_confirm(client, db, paypal_gateway):
    await put_cart(db, SESSION_OWNER, hoodies(2))
    intent = await client.post("/payments/paypal/create-intent", json={"shippingRegionId": "region-se"})
    order_id = intent.json()["data"]["providerRef"]

    captured = await client.post("/payments/paypal/capture", json={"orderId": order_id})
    assert captured.json()["data"] == {"orderId": order_id, "status": "COMPLETED"}

    confirmed = await client.post(
        "/checkout/confirm-payment",
        json={"provider": "paypal", "orderId": order_id, "shippingAddress": ADDRESS_JSON},
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["total"] == "850.00"


# --- Orders ---

async def test_order_lookup_is_owner_only(client, user_client, db, stripe_gateway):
    await put_cart(db, SESSION_OWNER, hoodies(2))
    ref = await pay(client, stripe_gateway, shippingRegionId="region-se")
    confirmed = await client.post(
        "/checkout/confirm-payment", json={"providerRef": ref, "shippingAddress": ADDRESS_JSON}
    )
    number = confirmed.json()["data"]["orderNumber"]

    own = await client.get(f"/checkout/orders/{number}")
    assert own.status_code == 200
    order = own.json()["data"]
    assert order["orderNumber"] == number
    assert order["total"] == "850.00"
    assert order["tax"] == "160.00"
    assert order["shippingAddress"]["addressLine1"] == "Storgatan 1"
    assert order["items"][0]["price"] == "400.00"

    assert (await user_client.get(f"/checkout/orders/{number}")).status_code == 404


async def test_signed_in_user_owns_cart_by_user_id(user_client, db, stripe_gateway):
    await put_cart(db, "user:user-1", hoodies(1))
    ref = await pay(user_client, stripe_gateway)

    response = await user_client.post(
        "/checkout/confirm-payment", json={"providerRef": ref, "shippingAddress": ADDRESS_JSON}
    )

    assert response.status_code == 200
    stored = await db.orders.find_one({"payment_reference_id": ref})
    assert stored["user_id"] == "user-1"
    assert stored["email"] == "ada@example.com"


# --- Cross-cutting ---

async def test_security_and_request_id_headers(client):
    response = await client.get("/checkout/tax", headers={"X-Request-ID": "req-123"})

    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Request-ID"] == "req-123"


# --- Shipping regions ---

async def test_list_shipping_regions(client):
    response = await client.get("/shipping/regions")

    assert response.status_code == 200
    regions = response.json()["data"]
    assert [region["code"] for region in regions] == ["EU", "SE"]
    assert regions[1] == {
        "id": "region-se",
        "code": "SE",
        "name": "Sweden",
        "baseCost": "50.00",
        "freeShippingThreshold": "1000.00",
        "countries": ["SE"],
    }


async def test_detect_region(client):
    response = await client.post("/shipping/detect-region", json={"country": "fr"})

    assert response.status_code == 200
    assert response.json()["data"]["id"] == "region-eu"


async def test_detect_region_without_match(client):
    missing = await client.post("/shipping/detect-region", json={"country": "US"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "No shipping region found for this country"

    invalid = await client.post("/shipping/detect-region", json={"country": "Sweden"})
    assert invalid.status_code == 400
    assert invalid.json()["details"][0]["field"] == "country"


# --- Order history and notes ---

async def test_order_notes_and_gift_message_are_stored(client, db, stripe_gateway):
    await put_cart(db, SESSION_OWNER, hoodies(2))
    ref = await pay(client, stripe_gateway, shippingRegionId="region-se")

    confirmed = await client.post(
        "/checkout/confirm-payment",
        json={
            "providerRef": ref,
            "shippingAddress": ADDRESS_JSON,
            "orderNotes": "Leave at the door",
            "giftMessage": "<b>Happy birthday</b>",
        },
    )
    number = confirmed.json()["data"]["orderNumber"]

    order = (await client.get(f"/checkout/orders/{number}")).json()["data"]
    assert order["orderNotes"] == "Leave at the door"
    assert order["giftMessage"] == "&lt;b&gt;Happy birthday&lt;/b&gt;"


async def test_signed_in_user_lists_their_orders_newest_first(user_client, db, stripe_gateway):
    numbers = []
    for _ in range(2):
        await put_cart(db, "user:user-1", hoodies(1))
        ref = await pay(user_client, stripe_gateway)
        confirmed = await user_client.post(
            "/checkout/confirm-payment", json={"providerRef": ref, "shippingAddress": ADDRESS_JSON}
        )
        numbers.append(confirmed.json()["data"]["orderNumber"])
    await db.orders.update_one({"order_number": numbers[0]}, {"$set": {"created_at": utcnow() - timedelta(days=1)}})

    response = await user_client.get("/checkout/orders")

    assert response.status_code == 200
    assert [order["orderNumber"] for order in response.json()["data"]] == [numbers[1], numbers[0]]

    page = await user_client.get("/checkout/orders", params={"page": 2, "limit": 1})
    assert [order["orderNumber"] for order in page.json()["data"]] == [numbers[0]]


async def test_guests_cannot_list_orders(client):
    response = await client.get("/checkout/orders")

    assert response.status_code == 401
    assert response.json()["details"] == {"code": "not_authenticated"}
