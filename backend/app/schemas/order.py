from typing import List, Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field

from app.models.order import ShippingAddress, OrderItem, CouponSnapshot, StatusHistory


class OrderProductCreate(BaseModel):
    """Schema for product in order creation."""
    product_id: str
    quantity: int = Field(gt=0, le=100)


class OrderCreate(BaseModel):
    """
    Schema for creating an order after the client confirmed its payment.
    
    ``items`` and ``shipping_address`` are optional; when sent they must match
    what was recorded on the payment intent.
    """
    payment_intent_id: str
    items: Optional[List[OrderProductCreate]] = None
    shipping_address: Optional[ShippingAddress] = None
    coupon_code: Optional[str] = None
    
    class Config:
        json_schema_extra = {
            "example": {
                "payment_intent_id": "pi_3Q0abc123",
                "items": [
                    {"product_id": "65a1f0c2e4b0a1b2c3d4e5f6", "quantity": 2}
                ]
            }
        }


class CheckoutSessionRequest(BaseModel):
    """Schema for a "buy now" checkout draft."""
    product_id: str
    quantity: int = Field(default=1, ge=1, le=100)


class CheckoutSessionResponse(BaseModel):
    """Single-line checkout draft; nothing is reserved."""
    items: List[Dict[str, Any]]
    subtotal: float
    shipping: float
    tax: float
    discount: float
    total: float


class OrderResponse(BaseModel):
    """Schema for order response."""
    id: str
    user_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str
    payment_status: str
    order_status: str
    subtotal: float
    shipping: float
    tax: float
    discount: float
    coupon: Optional[CouponSnapshot] = None
    total: float
    payment_intent_id: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    status_history: List[StatusHistory] = Field(default_factory=list)
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    
    class Config:
        from_attributes = True
        populate_by_name = True


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total: int
    has_next: bool
    has_prev: bool


class OrderListResponse(BaseModel):
    """Paginated list of orders."""
    orders: List[OrderResponse]
    pagination: Pagination


class OrderStatusUpdate(BaseModel):
    """Schema for admin order status update."""
    status: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    
    class Config:
        json_schema_extra = {
            "example": {
                "status": "shipped",
                "tracking_number": "1Z999AA10123456784"
            }
        }
