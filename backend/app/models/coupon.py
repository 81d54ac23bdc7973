from datetime import datetime
from typing import List, Optional
from enum import Enum
from pydantic import BaseModel, Field


class DiscountType(str, Enum):
    """Coupon discount type."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Coupon(BaseModel):
    """Coupon model for MongoDB."""
    id: Optional[str] = Field(None, alias="_id")
    code: str = Field(min_length=3, max_length=20)  # Stored upper-cased
    description: str = Field(default="", max_length=200)
    discount_type: DiscountType
    discount_value: float = Field(gt=0)
    minimum_order_amount: float = Field(default=0.0, ge=0)
    maximum_discount_amount: Optional[float] = Field(default=None, ge=0)
    expiry_date: datetime
    usage_limit: Optional[int] = Field(default=None, ge=1)
    used_count: int = Field(default=0, ge=0)
    is_active: bool = True
    applicable_categories: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    
    class Config:
        populate_by_name = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "code": "SAVE10",
                "description": "10% off your order",
                "discount_type": "percentage",
                "discount_value": 10,
                "minimum_order_amount": 0,
                "expiry_date": "2030-01-01T00:00:00",
                "usage_limit": 100,
                "is_active": True
            }
        }


def coupon_is_expired(coupon: dict, now: Optional[datetime] = None) -> bool:
    return (now or datetime.utcnow()) >= coupon["expiry_date"]


def coupon_usage_limit_reached(coupon: dict) -> bool:
    usage_limit = coupon.get("usage_limit")
    return bool(usage_limit) and coupon.get("used_count", 0) >= usage_limit
