"""Discount code validation and usage accounting.

Validation runs the checks in a fixed order and raises the first
``DiscountError`` it hits. Usage is only ever consumed through
``DiscountCodeRepository.claim_usage``, which attributes one use to one
payment reference and increments the global counter with a single
conditional update, so two checkouts racing for the last use cannot both
win.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from checkout_service.errors import (
    CodeExpired,
    CodeInactive,
    CodeNotFound,
    CodeNotYetValid,
    GlobalUsageLimitReached,
    MinimumPurchaseNotMet,
    UserUsageLimitReached,
)
from checkout_service.models import (
    DiscountCodeDB,
    DiscountType,
    DiscountUsageDB,
    to_document,
    utcnow,
)
from checkout_service.money import format_amount, percentage_of, to_minor

logger = logging.getLogger("checkout-service")


class DiscountCodeRepository:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.codes = db.discount_codes
        self.usage = db.discount_code_usage

    async def create_indexes(self):
        await self.codes.create_index("code", unique=True)
        await self.usage.create_index("payment_reference_id", unique=True)
        await self.usage.create_index([("discount_code_id", 1), ("user_id", 1)])
        await self.usage.create_index([("discount_code_id", 1), ("email", 1)])

    async def get_by_code(self, code: str) -> Optional[DiscountCodeDB]:
        doc = await self.codes.find_one({"code": code.strip().upper()})
        return DiscountCodeDB(**doc) if doc else None

    async def count_user_usage(
        self,
        code_id: str,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        exclude_reference: Optional[str] = None,
    ) -> int:
        query = {"discount_code_id": code_id}
        if user_id:
            query["user_id"] = user_id
        elif email:
            query["email"] = email
        else:
            return 0
        if exclude_reference:
            query["payment_reference_id"] = {"$ne": exclude_reference}
        return await self.usage.count_documents(query)

    async def claim_usage(
        self,
        code: DiscountCodeDB,
        payment_reference_id: str,
        discount_amount: int,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> bool:
        """Consume one use of ``code`` on behalf of a payment reference.

        Returns True when the use belongs to this reference (including when
        an earlier attempt for the same reference already claimed it) and
        False when the global or per-user limit is exhausted.

        The usage row is written uncounted and only flagged ``counted`` after
        the conditional increment succeeds. A retry that finds an uncounted
        row redoes the increment instead of trusting the row.
        """
        usage = DiscountUsageDB(
            discount_code_id=code.id,
            payment_reference_id=payment_reference_id,
            user_id=user_id,
            email=email,
            discount_amount=discount_amount,
        )
        try:
            await self.usage.insert_one(to_document(usage))
        except DuplicateKeyError:
            existing = await self.usage.find_one({"payment_reference_id": payment_reference_id})
            if existing is None:
                # released by a concurrent attempt for the same reference that lost
                return False
            if existing.get("counted"):
                return True

        used = await self.count_user_usage(code.id, user_id, email, exclude_reference=payment_reference_id)
        if (user_id or email) and used >= code.user_usage_limit:
            await self._release(payment_reference_id)
            logger.info(
                "Discount claim rejected: per-user limit",
                extra={"discount_code": code.code, "payment_reference_id": payment_reference_id},
            )
            return False

        query = {"_id": code.id}
        if code.usage_limit is not None:
            query["usage_count"] = {"$lt": code.usage_limit}
        updated = await self.codes.find_one_and_update(
            query,
            {"$inc": {"usage_count": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            await self._release(payment_reference_id)
            logger.info(
                "Discount claim rejected: usage limit reached",
                extra={"discount_code": code.code, "payment_reference_id": payment_reference_id},
            )
            return False

        await self.usage.update_one(
            {"payment_reference_id": payment_reference_id}, {"$set": {"counted": True}}
        )
        return True

    async def _release(self, payment_reference_id: str) -> None:
        await self.usage.delete_one({"payment_reference_id": payment_reference_id})


def compute_discount_amount(code: DiscountCodeDB, subtotal: int) -> int:
    """Discount in minor units; never larger than the subtotal for fixed codes."""
    if code.discount_type == DiscountType.PERCENTAGE:
        amount = percentage_of(subtotal, code.discount_value)
        if code.maximum_discount is not None:
            amount = min(amount, to_minor(code.maximum_discount))
        return amount

    return min(to_minor(code.discount_value), subtotal)


class DiscountValidator:
    compute_discount_amount = staticmethod(compute_discount_amount)

    def __init__(self, repository: DiscountCodeRepository, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock

    async def validate(
        self,
        code: str,
        subtotal: int,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        check_usage: bool = True,
    ) -> DiscountCodeDB:
        """Return the applicable code or raise the first failing ``DiscountError``.

        ``check_usage=False`` skips the usage-limit checks; callers that go
        on to ``claim_usage`` get those limits enforced atomically there.
        """
        discount = await self.repository.get_by_code(code)
        if discount is None:
            raise CodeNotFound()
        if not discount.active:
            raise CodeInactive()

        now = self.clock()
        if discount.valid_from and now < discount.valid_from:
            raise CodeNotYetValid()
        if discount.valid_until and now > discount.valid_until:
            raise CodeExpired()

        minimum = to_minor(discount.minimum_purchase)
        if subtotal < minimum:
            raise MinimumPurchaseNotMet(f"Minimum purchase of {format_amount(minimum)} required")

        if not check_usage:
            return discount

        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            raise GlobalUsageLimitReached()

        if user_id or email:
            used = await self.repository.count_user_usage(discount.id, user_id, email)
            if used >= discount.user_usage_limit:
                raise UserUsageLimitReached()

        return discount
