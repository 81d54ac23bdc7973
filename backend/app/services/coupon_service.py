"""
Coupon discount engine.

Discount computation is pure; usage tracking is a separate, explicit step
(``apply``) that the checkout invokes exactly once per order.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import NotFoundError, InvalidInputError, ConflictError
from app.models.coupon import (
    Coupon,
    DiscountType,
    coupon_is_expired,
    coupon_usage_limit_reached,
)
from app.services.notification_service import NotificationService
from app.utils.helpers import (
    build_pagination,
    parse_object_id,
    round_money,
    to_finite_number,
    to_naive_utc,
)

logger = logging.getLogger(__name__)


def calculate_discount(coupon: dict, order_amount: Any) -> float:
    """
    Discount a coupon grants on ``order_amount``.

    Percentage coupons take ``value``% of the amount, fixed coupons take
    ``value``. The result is capped by ``maximum_discount_amount`` (when set),
    then by the order amount itself, and rounded half-up to cents. Invalid
    amounts yield 0.
    """
    amount = to_finite_number(order_amount)
    value = to_finite_number(coupon.get("discount_value"))
    if amount is None or amount <= 0 or value is None or value <= 0:
        return 0.0

    if coupon.get("discount_type") == DiscountType.PERCENTAGE.value:
        discount = amount * value / 100
    else:
        discount = value

    maximum = to_finite_number(coupon.get("maximum_discount_amount"))
    if maximum is not None and maximum > 0 and discount > maximum:
        discount = maximum

    discount = min(discount, amount)
    return max(round_money(discount), 0.0)


def coupon_snapshot(coupon: dict, discount_amount: float) -> dict:
    """Copy of the coupon stored on an order."""
    return {
        "_id": str(coupon["_id"]),
        "code": coupon["code"],
        "discount_type": coupon["discount_type"],
        "discount_value": coupon["discount_value"],
        "discount_amount": discount_amount,
    }


def invalid_result(message: str) -> Dict[str, Any]:
    return {"is_valid": False, "discount_amount": 0.0, "message": message, "coupon": None}


class CouponService:
    """Coupon validation, usage tracking and admin management."""

    def __init__(self, db: AsyncIOMotorDatabase, notifier: NotificationService = None):
        self.db = db
        self.notifier = notifier or NotificationService()

    @staticmethod
    def normalize_code(code: str) -> str:
        return (code or "").strip().upper()

    async def get_coupon(self, coupon_id: str) -> dict:
        oid = parse_object_id(coupon_id)
        coupon = await self.db.coupons.find_one({"_id": oid}) if oid else None
        if not coupon:
            raise NotFoundError("Coupon not found")
        return coupon

    async def validate(
        self,
        code: str,
        order_amount: Any,
        cart_categories: Optional[Iterable[str]] = None
    ) -> Dict[str, Any]:
        """
        Check a coupon code against an order.

        Never raises for business-rule failures; the reason is returned in
        ``message`` with ``is_valid`` false and a zero discount.
        """
        normalized = self.normalize_code(code)
        if not normalized:
            return invalid_result("Coupon code is required")

        amount = to_finite_number(order_amount)
        if amount is None or amount <= 0:
            return invalid_result("Invalid order amount")

        coupon = await self.db.coupons.find_one({"code": normalized, "is_active": True})
        if not coupon:
            return invalid_result("Invalid coupon code")

        if coupon_is_expired(coupon):
            return invalid_result("Coupon has expired")

        if coupon_usage_limit_reached(coupon):
            return invalid_result("Coupon usage limit reached")

        minimum = coupon.get("minimum_order_amount") or 0
        if minimum and amount < minimum:
            return invalid_result(f"Minimum order amount of ${minimum:.2f} required")

        applicable = coupon.get("applicable_categories") or []
        if applicable:
            categories = {c for c in (cart_categories or []) if c}
            if not categories.intersection(applicable):
                return invalid_result("Coupon not applicable to items in cart")

        discount_amount = calculate_discount(coupon, amount)
        return {
            "is_valid": True,
            "discount_amount": discount_amount,
            "message": f"Discount of ${discount_amount:.2f} applied",
            "coupon": coupon,
        }

    async def apply(self, coupon_id: str) -> dict:
        """
        Record one use of a coupon.

        The increment is a single atomic update; if it pushes ``used_count``
        past ``usage_limit`` it is undone and the use is refused.
        """
        coupon = await self.get_coupon(coupon_id)
        if not coupon.get("is_active") or coupon_is_expired(coupon):
            raise InvalidInputError("Coupon is no longer valid")

        updated = await self.db.coupons.find_one_and_update(
            {"_id": coupon["_id"], "is_active": True},
            {"$inc": {"used_count": 1}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise InvalidInputError("Coupon is no longer valid")

        usage_limit = updated.get("usage_limit")
        if usage_limit and updated["used_count"] > usage_limit:
            await self.db.coupons.update_one(
                {"_id": coupon["_id"]},
                {"$inc": {"used_count": -1}}
            )
            raise ConflictError("Coupon usage limit reached")

        logger.info(f"Coupon {updated['code']} used ({updated['used_count']} uses)")
        await self.notifier.notify_admins("coupon:used", {
            "coupon_id": str(updated["_id"]),
            "used_count": updated["used_count"],
            "code": updated["code"],
        })
        return updated

    async def release(self, coupon_id: str) -> None:
        """Undo one ``apply`` when the order it was applied for is rolled back."""
        oid = parse_object_id(coupon_id)
        await self.db.coupons.update_one(
            {"_id": oid, "used_count": {"$gt": 0}},
            {"$inc": {"used_count": -1}}
        )
        logger.info(f"Released one use of coupon {coupon_id}")

    # Admin management

    async def list_coupons(
        self,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        is_active: Optional[bool] = None
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"code": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if is_active is not None:
            query["is_active"] = is_active

        skip = (page - 1) * limit
        total = await self.db.coupons.count_documents(query)
        coupons = await self.db.coupons.find(query).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)

        return {
            "coupons": coupons,
            "pagination": build_pagination(page, limit, total),
        }

    @staticmethod
    def _validate_terms(
        discount_type: Optional[str],
        discount_value: Optional[float],
        expiry_date: Optional[datetime]
    ):
        if expiry_date is not None and to_naive_utc(expiry_date) <= datetime.utcnow():
            raise InvalidInputError("Expiry date must be in the future")
        if discount_value is not None:
            if discount_value <= 0:
                raise InvalidInputError("Discount value must be greater than 0")
            if discount_type == DiscountType.PERCENTAGE.value and discount_value > 100:
                raise InvalidInputError("Percentage discount cannot exceed 100%")

    async def create_coupon(self, data: Dict[str, Any], created_by: str) -> dict:
        code = self.normalize_code(data.get("code"))
        if await self.db.coupons.find_one({"code": code}):
            raise InvalidInputError("Coupon code already exists")

        self._validate_terms(data.get("discount_type"), data.get("discount_value"), data.get("expiry_date"))

        coupon = Coupon(
            **{**data, "code": code, "expiry_date": to_naive_utc(data["expiry_date"])},
            created_by=created_by
        )
        coupon_dict = coupon.model_dump(by_alias=True, exclude={"id"})

        try:
            result = await self.db.coupons.insert_one(coupon_dict)
        except DuplicateKeyError:
            raise InvalidInputError("Coupon code already exists")
        coupon_dict["_id"] = result.inserted_id

        logger.info(f"Coupon {code} created by {created_by}")
        await self.notifier.broadcast("coupon:created", {
            "coupon": coupon_dict,
            "message": f'New coupon "{code}" is now available! {coupon_dict.get("description", "")}'.strip(),
        })
        await self.notifier.analytics_updated("coupon_created", {
            "coupon_id": str(coupon_dict["_id"]),
            "code": code,
        })
        return coupon_dict

    async def update_coupon(self, coupon_id: str, data: Dict[str, Any]) -> dict:
        existing = await self.get_coupon(coupon_id)
        update = {k: v for k, v in data.items() if v is not None}

        if "code" in update:
            update["code"] = self.normalize_code(update["code"])
            duplicate = await self.db.coupons.find_one({
                "code": update["code"],
                "_id": {"$ne": existing["_id"]}
            })
            if duplicate:
                raise InvalidInputError("Coupon code already exists")

        if "expiry_date" in update:
            update["expiry_date"] = to_naive_utc(update["expiry_date"])
        self._validate_terms(
            update.get("discount_type", existing.get("discount_type")),
            update.get("discount_value", existing.get("discount_value")),
            update.get("expiry_date")
        )

        update["updated_at"] = datetime.utcnow()
        try:
            coupon = await self.db.coupons.find_one_and_update(
                {"_id": existing["_id"]},
                {"$set": update},
                return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise InvalidInputError("Coupon code already exists")
        if coupon is None:
            raise NotFoundError("Coupon not found")

        await self.notifier.notify_admins("coupon:updated", coupon)
        return coupon

    async def delete_coupon(self, coupon_id: str) -> None:
        oid = parse_object_id(coupon_id)
        coupon = await self.db.coupons.find_one_and_delete({"_id": oid}) if oid else None
        if not coupon:
            raise NotFoundError("Coupon not found")

        logger.info(f"Coupon {coupon['code']} deleted")
        await self.notifier.notify_admins("coupon:deleted", {"coupon_id": coupon_id})
