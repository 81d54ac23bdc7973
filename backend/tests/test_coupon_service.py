"""
Tests for the coupon discount engine.
"""
from datetime import datetime, timedelta

import pytest

from app.core.exceptions import ConflictError, InvalidInputError, NotFoundError
from app.services.coupon_service import CouponService, calculate_discount


class TestCalculateDiscount:
    """Test pure discount computation."""
    
    def test_percentage(self):
        """Percentage coupons take value% of the amount."""
        assert calculate_discount({"discount_type": "percentage", "discount_value": 10}, 100) == 10.0
    
    def test_fixed(self):
        """Fixed coupons take their value."""
        assert calculate_discount({"discount_type": "fixed", "discount_value": 15}, 100) == 15.0
    
    def test_maximum_discount_cap(self):
        """The maximum discount amount caps the result."""
        coupon = {"discount_type": "percentage", "discount_value": 50, "maximum_discount_amount": 20}
        assert calculate_discount(coupon, 100) == 20.0
    
    def test_never_exceeds_order_amount(self):
        """A fixed discount larger than the order is capped at the order amount."""
        assert calculate_discount({"discount_type": "fixed", "discount_value": 80}, 30) == 30.0
    
    def test_rounds_half_up_to_cents(self):
        """Discounts are rounded half-up to two decimals."""
        assert calculate_discount({"discount_type": "percentage", "discount_value": 12.5}, 0.2) == 0.03
        assert calculate_discount({"discount_type": "percentage", "discount_value": 10}, 0.05) == 0.01
    
    @pytest.mark.parametrize("amount", [0, -10, None, "abc", float("nan"), float("inf")])
    def test_invalid_amount_yields_zero(self, amount):
        """Invalid order amounts give no discount."""
        assert calculate_discount({"discount_type": "percentage", "discount_value": 10}, amount) == 0.0
    
    @pytest.mark.parametrize("amount", [0.01, 1, 19.99, 100, 2500])
    @pytest.mark.parametrize("coupon", [
        {"discount_type": "percentage", "discount_value": 10},
        {"discount_type": "percentage", "discount_value": 100, "maximum_discount_amount": 25},
        {"discount_type": "fixed", "discount_value": 40},
    ])
    def test_discount_bounds(self, coupon, amount):
        """0 <= discount <= min(amount, maximum_discount_amount)."""
        discount = calculate_discount(coupon, amount)
        cap = coupon.get("maximum_discount_amount") or float("inf")
        assert 0 <= discount <= min(amount, cap)


class TestValidateCoupon:
    """Test coupon validation messages."""
    
    @pytest.mark.asyncio
    async def test_valid_coupon_case_insensitive(self, db, notifier, make_coupon):
        """Codes are matched upper-cased."""
        await make_coupon(code="SAVE10")
        result = await CouponService(db, notifier).validate(" save10 ", 100)
        assert result["is_valid"] is True
        assert result["discount_amount"] == 10.0
    
    @pytest.mark.asyncio
    async def test_unknown_code(self, db, notifier):
        """Unknown codes are invalid."""
        result = await CouponService(db, notifier).validate("NOPE", 100)
        assert result == {"is_valid": False, "discount_amount": 0.0, "message": "Invalid coupon code", "coupon": None}
    
    @pytest.mark.asyncio
    async def test_inactive_coupon(self, db, notifier, make_coupon):
        """Inactive coupons read as unknown."""
        await make_coupon(is_active=False)
        result = await CouponService(db, notifier).validate("SAVE10", 100)
        assert result["message"] == "Invalid coupon code"
    
    @pytest.mark.asyncio
    async def test_expired_coupon(self, db, notifier, make_coupon):
        """Expired coupons are rejected."""
        await make_coupon(expiry_date=datetime.utcnow() - timedelta(minutes=1))
        result = await CouponService(db, notifier).validate("SAVE10", 100)
        assert result["is_valid"] is False
        assert result["message"] == "Coupon has expired"
    
    @pytest.mark.asyncio
    async def test_usage_limit_reached(self, db, notifier, make_coupon):
        """A coupon at its usage limit gives no discount."""
        await make_coupon(usage_limit=5, used_count=5)
        result = await CouponService(db, notifier).validate("SAVE10", 100)
        assert result["is_valid"] is False
        assert result["discount_amount"] == 0.0
        assert result["message"] == "Coupon usage limit reached"
    
    @pytest.mark.asyncio
    async def test_minimum_order_amount(self, db, notifier, make_coupon):
        """Orders below the minimum are rejected with the minimum in the message."""
        await make_coupon(minimum_order_amount=50)
        result = await CouponService(db, notifier).validate("SAVE10", 49.99)
        assert result["is_valid"] is False
        assert "50.00" in result["message"]
    
    @pytest.mark.asyncio
    async def test_applicable_categories(self, db, notifier, make_coupon):
        """Category-restricted coupons need a matching cart category."""
        await make_coupon(applicable_categories=["books"])
        service = CouponService(db, notifier)
        
        rejected = await service.validate("SAVE10", 100, ["home"])
        assert rejected["message"] == "Coupon not applicable to items in cart"
        
        accepted = await service.validate("SAVE10", 100, ["home", "books"])
        assert accepted["is_valid"] is True
    
    @pytest.mark.asyncio
    async def test_invalid_order_amount(self, db, notifier, make_coupon):
        """A non-positive order amount is rejected before lookup."""
        await make_coupon()
        result = await CouponService(db, notifier).validate("SAVE10", 0)
        assert result["message"] == "Invalid order amount"


class TestApplyCoupon:
    """Test usage tracking."""
    
    @pytest.mark.asyncio
    async def test_apply_increments_once(self, db, notifier, publisher, make_coupon):
        """Each apply records exactly one use and tells admins."""
        coupon = await make_coupon()
        service = CouponService(db, notifier)
        
        updated = await service.apply(str(coupon["_id"]))
        
        assert updated["used_count"] == 1
        assert "coupon:used" in publisher.names_for("role:admin")
    
    @pytest.mark.asyncio
    async def test_apply_at_limit_refused_and_rolled_back(self, db, notifier, make_coupon):
        """Going past the usage limit is refused and leaves the count unchanged."""
        coupon = await make_coupon(usage_limit=1)
        service = CouponService(db, notifier)
        
        await service.apply(str(coupon["_id"]))
        with pytest.raises(ConflictError):
            await service.apply(str(coupon["_id"]))
        
        stored = await db.coupons.find_one({"_id": coupon["_id"]})
        assert stored["used_count"] == 1
    
    @pytest.mark.asyncio
    async def test_apply_expired(self, db, notifier, make_coupon):
        """Expired coupons cannot be used."""
        coupon = await make_coupon(expiry_date=datetime.utcnow() - timedelta(days=1))
        with pytest.raises(InvalidInputError):
            await CouponService(db, notifier).apply(str(coupon["_id"]))
    
    @pytest.mark.asyncio
    async def test_release_never_goes_negative(self, db, notifier, make_coupon):
        """Releasing an unused coupon keeps the count at zero."""
        coupon = await make_coupon()
        service = CouponService(db, notifier)
        await service.release(str(coupon["_id"]))
        stored = await db.coupons.find_one({"_id": coupon["_id"]})
        assert stored["used_count"] == 0


class TestCouponAdmin:
    """Test admin coupon management."""
    
    def _payload(self, **overrides):
        data = {
            "code": "welcome5",
            "description": "Five off",
            "discount_type": "fixed",
            "discount_value": 5,
            "minimum_order_amount": 0,
            "maximum_discount_amount": None,
            "expiry_date": datetime.utcnow() + timedelta(days=7),
            "usage_limit": 10,
            "is_active": True,
            "applicable_categories": []
        }
        data.update(overrides)
        return data
    
    @pytest.mark.asyncio
    async def test_create_normalizes_code_and_broadcasts(self, db, notifier, publisher):
        """Codes are stored upper-cased and new coupons are broadcast."""
        coupon = await CouponService(db, notifier).create_coupon(self._payload(), created_by="admin-1")
        
        assert coupon["code"] == "WELCOME5"
        assert coupon["used_count"] == 0
        assert "coupon:created" in publisher.names_for("broadcast")
    
    @pytest.mark.asyncio
    async def test_create_duplicate_code(self, db, notifier, make_coupon):
        """Duplicate codes are rejected."""
        await make_coupon(code="WELCOME5")
        with pytest.raises(InvalidInputError):
            await CouponService(db, notifier).create_coupon(self._payload(), created_by="admin-1")
    
    @pytest.mark.asyncio
    async def test_create_rejects_past_expiry(self, db, notifier):
        """Expiry dates must be in the future."""
        with pytest.raises(InvalidInputError):
            await CouponService(db, notifier).create_coupon(
                self._payload(expiry_date=datetime.utcnow() - timedelta(days=1)),
                created_by="admin-1"
            )
    
    @pytest.mark.asyncio
    async def test_create_rejects_percentage_over_100(self, db, notifier):
        """Percentage coupons cannot exceed 100%."""
        with pytest.raises(InvalidInputError):
            await CouponService(db, notifier).create_coupon(
                self._payload(discount_type="percentage", discount_value=120),
                created_by="admin-1"
            )
    
    @pytest.mark.asyncio
    async def test_update_and_delete(self, db, notifier, make_coupon):
        """Updates touch only the given fields; deleted coupons are gone."""
        coupon = await make_coupon()
        service = CouponService(db, notifier)
        
        updated = await service.update_coupon(str(coupon["_id"]), {"description": "Ten off", "usage_limit": None})
        assert updated["description"] == "Ten off"
        assert updated["discount_value"] == 10
        
        await service.delete_coupon(str(coupon["_id"]))
        with pytest.raises(NotFoundError):
            await service.get_coupon(str(coupon["_id"]))
    
    @pytest.mark.asyncio
    async def test_update_type_checked_against_stored_value(self, db, notifier, make_coupon):
        """Switching a 150 fixed coupon to percentage is refused."""
        coupon = await make_coupon(code="BIGFIXED", discount_type="fixed", discount_value=150)
        service = CouponService(db, notifier)
    
        with pytest.raises(InvalidInputError):
            await service.update_coupon(str(coupon["_id"]), {"discount_type": "percentage"})
    
        stored = await service.get_coupon(str(coupon["_id"]))
        assert stored["discount_type"] == "fixed"
    
        updated = await service.update_coupon(str(coupon["_id"]), {"discount_type": "percentage", "discount_value": 15})
        assert updated["discount_type"] == "percentage"
    
    @pytest.mark.asyncio
    async def test_list_with_search(self, db, notifier, make_coupon):
        """Search matches codes case-insensitively."""
        await make_coupon(code="SAVE10")
        await make_coupon(code="FREESHIP", discount_type="fixed", discount_value=10)
        
        result = await CouponService(db, notifier).list_coupons(search="save")
        assert [c["code"] for c in result["coupons"]] == ["SAVE10"]
        assert result["pagination"]["total"] == 1
