from typing import List, Optional
from pydantic import BaseModel, Field


class AddToCartRequest(BaseModel):
    """Schema for adding a product to cart."""
    product_id: str
    quantity: int = Field(default=1, ge=1, le=100)
    
    class Config:
        json_schema_extra = {
            "example": {
                "product_id": "65a1f0c2e4b0a1b2c3d4e5f6",
                "quantity": 2
            }
        }


class UpdateCartItemRequest(BaseModel):
    """Schema for updating cart item quantity (0 removes the line)."""
    quantity: int = Field(ge=0, le=100)
    
    class Config:
        json_schema_extra = {
            "example": {
                "quantity": 3
            }
        }


class CartItemResponse(BaseModel):
    """Schema for cart item response."""
    product_id: str
    quantity: int
    price: float  # Snapshot taken on the last add/update
    current_price: float
    name: str
    image: Optional[str] = None
    category: Optional[str] = None
    stock: int
    subtotal: float
    available: bool = True
    price_changed: bool = False
    stock_warning: bool = False
    
    class Config:
        from_attributes = True


class CartResponse(BaseModel):
    """Schema for cart response."""
    id: Optional[str] = None
    items: List[CartItemResponse]
    total_amount: float
    total_items: int
    
    class Config:
        from_attributes = True


class CartCountResponse(BaseModel):
    count: int
