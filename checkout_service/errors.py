"""Checkout error taxonomy.

Every error raised by the pricing and order pipeline derives from
``CheckoutError``, which is an ``AppException`` and therefore an
``HTTPException``: the status code travels with the error and the
service's exception handler renders it with a stable ``code``.

User-correctable failures (empty cart, discount problems, unknown region)
are 400s; environment and configuration problems (missing gateway
credentials, gateway timeouts) and persistence failures are 500s.
"""

from typing import Any, Optional
from fastapi import status

from shared.utils import AppException


class CheckoutError(AppException):
    code = "checkout_error"
    status_code_default = status.HTTP_400_BAD_REQUEST
    message = "Checkout failed"

    def __init__(self, detail: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(status_code=self.status_code_default, detail=detail or self.message, details=details)


class CartEmpty(CheckoutError):
    code = "cart_empty"
    message = "Cart is empty"


class RegionNotFound(CheckoutError):
    code = "region_not_found"
    message = "Shipping region not found"


class UnknownProvider(CheckoutError):
    code = "unknown_provider"
    status_code_default = status.HTTP_404_NOT_FOUND
    message = "Unknown payment provider"


class GatewayUnavailable(CheckoutError):
    code = "gateway_unavailable"
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Payment gateway is unavailable"


class GatewayRejected(CheckoutError):
    code = "gateway_rejected"
    message = "Payment gateway rejected the request"


class PaymentNotSucceeded(CheckoutError):
    code = "payment_not_succeeded"
    message = "Payment not successful"


class PersistenceFailure(CheckoutError):
    code = "persistence_failure"
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Failed to persist order"


# --- Discount errors ---

class DiscountError(CheckoutError):
    code = "discount_invalid"
    message = "Invalid discount code"


class CodeNotFound(DiscountError):
    code = "code_not_found"
    message = "Discount code not found"


class CodeInactive(DiscountError):
    code = "code_inactive"
    message = "Discount code is inactive"


class CodeNotYetValid(DiscountError):
    code = "code_not_yet_valid"
    message = "Discount code is not yet valid"


class CodeExpired(DiscountError):
    code = "code_expired"
    message = "Discount code has expired"


class MinimumPurchaseNotMet(DiscountError):
    code = "minimum_purchase_not_met"
    message = "Minimum purchase not met"


class GlobalUsageLimitReached(DiscountError):
    code = "global_usage_limit_reached"
    message = "Discount code has reached its usage limit"


class UserUsageLimitReached(DiscountError):
    code = "user_usage_limit_reached"
    message = "You have already used this discount code"


class ShippingAddressRequired(CheckoutError):
    code = "shipping_address_required"
    message = "Shipping address is required"


DISCOUNT_ERRORS = {cls.code: cls for cls in DiscountError.__subclasses__()}


def discount_error_for(code: str, message: str) -> DiscountError:
    return DISCOUNT_ERRORS.get(code, DiscountError)(message)
