from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from app.models.coupon import DiscountType


class CouponValidateRequest(BaseModel):
    code: str
    order_amount: float
    cart_categories: List[str] = Field(default_factory=list)
    
    class Config:
        json_schema_extra = {
            "example": {
                "code": "SAVE10",
                "order_amount": 100.0,
                "cart_categories": ["home"]
            }
        }


class CouponSummary(BaseModel):
    """Public view of a valid coupon."""
    id: str
    code: str
    description: str = ""
    discount_type: str
    discount_value: float
    maximum_discount_amount: Optional[float] = None


class CouponValidateResponse(BaseModel):
    is_valid: bool
    discount_amount: float
    message: str
    coupon: Optional[CouponSummary] = None


class CouponApplyRequest(BaseModel):
    coupon_id: str


class CouponCreate(BaseModel):
    """Schema for admin coupon creation."""
    code: str = Field(min_length=3, max_length=20)
    description: str = Field(default="", max_length=200)
    discount_type: DiscountType
    discount_value: float = Field(gt=0)
    minimum_order_amount: float = Field(default=0.0, ge=0)
    maximum_discount_amount: Optional[float] = Field(default=None, ge=0)
    expiry_date: datetime
    usage_limit: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True
    applicable_categories: List[str] = Field(default_factory=list)
    
    class Config:
        use_enum_values = True


class CouponUpdate(BaseModel):
    """Schema for admin coupon update; omitted fields are left unchanged."""
    code: Optional[str] = Field(default=None, min_length=3, max_length=20)
    description: Optional[str] = Field(default=None, max_length=200)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(default=None, gt=0)
    minimum_order_amount: Optional[float] = Field(default=None, ge=0)
    maximum_discount_amount: Optional[float] = Field(default=None, ge=0)
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    applicable_categories: Optional[List[str]] = None
    
    class Config:
        use_enum_values = True


class CouponResponse(BaseModel):
    id: str
    code: str
    description: str
    discount_type: str
    discount_value: float
    minimum_order_amount: float
    maximum_discount_amount: Optional[float] = None
    expiry_date: datetime
    usage_limit: Optional[int] = None
    used_count: int
    is_active: bool
    applicable_categories: List[str]
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
