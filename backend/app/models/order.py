from datetime import datetime
from typing import List, Optional
from enum import Enum
from pydantic import BaseModel, Field

from app.models.coupon import DiscountType
from app.models.product import ProductImage


class OrderStatus(str, Enum):
    """Order fulfillment status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on-hold"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment status enumeration for orders."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class AddressType(str, Enum):
    HOME = "home"
    WORK = "work"
    OTHER = "other"


class ShippingAddress(BaseModel):
    """Shipping address captured at checkout."""
    first_name: str
    last_name: str
    email: str
    phone: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str
    address_type: AddressType = AddressType.HOME
    
    class Config:
        use_enum_values = True


class StatusHistory(BaseModel):
    """Status history entry for tracking order status changes."""
    status: str
    changed_at: datetime
    changed_by: str  # user_id or "system"
    note: Optional[str] = None


class ProductSnapshot(BaseModel):
    """Copy of the product taken when the order was created."""
    id: str = Field(alias="_id")
    name: str
    price: float = Field(ge=0)
    image_url: Optional[str] = None
    images: List[ProductImage] = Field(default_factory=list)
    category: str = ""
    
    class Config:
        populate_by_name = True


class OrderItem(BaseModel):
    """Line item in an order."""
    product: ProductSnapshot
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)  # Unit price paid


class CouponSnapshot(BaseModel):
    """Coupon applied to the order, as it was at checkout."""
    id: str = Field(alias="_id")
    code: str
    discount_type: DiscountType
    discount_value: float
    discount_amount: float
    
    class Config:
        populate_by_name = True
        use_enum_values = True


class Order(BaseModel):
    """Order model for MongoDB."""
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str = "stripe"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.PENDING
    subtotal: float = Field(ge=0)
    shipping: float = Field(default=0.0, ge=0)
    tax: float = Field(default=0.0, ge=0)
    discount: float = Field(default=0.0, ge=0)
    coupon: Optional[CouponSnapshot] = None
    total: float = Field(ge=0)
    payment_intent_id: Optional[str] = None  # Idempotency key for order creation
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    status_history: List[StatusHistory] = Field(default_factory=list)
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    
    class Config:
        populate_by_name = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "user_id": "user123",
                "items": [
                    {
                        "product": {
                            "_id": "prod123",
                            "name": "Desk Lamp",
                            "price": 50.0,
                            "category": "home"
                        },
                        "quantity": 2,
                        "price": 50.0
                    }
                ],
                "payment_status": "completed",
                "order_status": "pending",
                "subtotal": 100.0,
                "shipping": 10.0,
                "tax": 8.0,
                "discount": 10.0,
                "total": 108.0,
                "payment_intent_id": "pi_123"
            }
        }
