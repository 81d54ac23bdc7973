"""Payment schemas for API request/response validation."""

from typing import Optional, List
from pydantic import BaseModel, Field

from app.models.order import ShippingAddress
from app.schemas.order import OrderProductCreate, OrderResponse


class CreatePaymentIntentRequest(BaseModel):
    """Schema for starting a checkout payment."""
    items: List[OrderProductCreate] = Field(min_length=1)
    shipping_address: ShippingAddress
    coupon_code: Optional[str] = None
    total_amount: Optional[float] = None  # Client-side total, checked against ours
    
    class Config:
        json_schema_extra = {
            "example": {
                "items": [
                    {"product_id": "65a1f0c2e4b0a1b2c3d4e5f6", "quantity": 2}
                ],
                "shipping_address": {
                    "first_name": "Ada",
                    "last_name": "Lovelace",
                    "email": "ada@example.com",
                    "phone": "+15555550100",
                    "address": "12 Analytical Way",
                    "city": "London",
                    "state": "LDN",
                    "zip_code": "00000",
                    "country": "UK"
                },
                "coupon_code": "SAVE10",
                "total_amount": 108.0
            }
        }


class CreatePaymentIntentResponse(BaseModel):
    """Schema for payment intent creation response."""
    client_secret: str
    payment_intent_id: str
    amount: float
    currency: str
    subtotal: float
    shipping: float
    tax: float
    discount: float
    
    class Config:
        json_schema_extra = {
            "example": {
                "client_secret": "pi_3Q0abc123_secret_xyz",
                "payment_intent_id": "pi_3Q0abc123",
                "amount": 108.0,
                "currency": "usd",
                "subtotal": 100.0,
                "shipping": 10.0,
                "tax": 8.0,
                "discount": 10.0
            }
        }


class ConfirmPaymentRequest(BaseModel):
    """Schema for client-side payment confirmation."""
    payment_intent_id: str
    items: Optional[List[OrderProductCreate]] = None
    shipping_address: Optional[ShippingAddress] = None


class ConfirmPaymentResponse(BaseModel):
    message: str
    order: OrderResponse


class IntentStatusResponse(BaseModel):
    """Schema for payment intent status."""
    payment_intent_id: str
    status: str
    gateway_status: Optional[str] = None
    amount: float
    currency: str
    order_id: Optional[str] = None
    last_error: Optional[str] = None


class WebhookResponse(BaseModel):
    """Schema for webhook response."""
    received: bool = True
    event_type: Optional[str] = None
    payment_intent_id: Optional[str] = None
    
    class Config:
        json_schema_extra = {
            "example": {
                "received": True,
                "event_type": "payment_intent.succeeded",
                "payment_intent_id": "pi_3Q0abc123"
            }
        }


class SimulatePaymentResponse(BaseModel):
    """Schema for simulated payment response (admin only)."""
    message: str
    payment_intent_id: str
    status: str
    order_id: Optional[str] = None
    
    class Config:
        json_schema_extra = {
            "example": {
                "message": "Payment simulated successfully",
                "payment_intent_id": "pi_sim_abc123",
                "status": "order_created",
                "order_id": "695318db0f5f01144f5b4fb0"
            }
        }



class CreateCustomerRequest(BaseModel):
    """Schema for creating the caller's gateway customer."""
    email: Optional[str] = None
    name: Optional[str] = None


class CreateCustomerResponse(BaseModel):
    customer_id: str
    created: bool


class PaymentMethodResponse(BaseModel):
    """Saved card, reduced to display fields."""
    id: str
    type: str = "card"
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


class PaymentMethodsResponse(BaseModel):
    payment_methods: List[PaymentMethodResponse]


class WebhookHealthResponse(BaseModel):
    message: str
    timestamp: str
    received: bool = True
