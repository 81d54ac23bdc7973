from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from app.utils.helpers import round_money


class CartItem(BaseModel):
    """Item in a shopping cart."""
    product_id: str
    quantity: int = Field(ge=1, le=100)
    price: float = Field(ge=0)  # Unit price snapshot, refreshed on every add/update
    added_at: datetime = Field(default_factory=datetime.utcnow)


class Cart(BaseModel):
    """Shopping cart model for MongoDB."""
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = Field(default=0, ge=0)
    total_amount: float = Field(default=0.0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    
    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "user_id": "user123",
                "items": [
                    {
                        "product_id": "prod123",
                        "quantity": 2,
                        "price": 49.99,
                        "added_at": "2024-01-01T00:00:00"
                    }
                ],
                "total_items": 2,
                "total_amount": 99.98,
                "created_at": "2024-01-01T00:00:00",
                "updated_at": "2024-01-01T00:00:00"
            }
        }


def compute_cart_totals(items: List[dict]) -> dict:
    """Derive cart totals from its lines; never stored independently of them."""
    total_items = sum(item["quantity"] for item in items)
    total_amount = sum(item["price"] * item["quantity"] for item in items)
    return {
        "total_items": total_items,
        "total_amount": round_money(total_amount)
    }
