"""Payment intent record model for MongoDB."""

from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum
from pydantic import BaseModel, Field


class IntentStatus(str, Enum):
    """
    Checkout state of a payment intent.
    
    created -> succeeded -> order_created, with alternate terminal states
    failed / canceled / requires_action. ``materializing`` is held while one
    trigger owns the order-creation claim.
    """
    CREATED = "created"
    SUCCEEDED = "succeeded"
    MATERIALIZING = "materializing"
    ORDER_CREATED = "order_created"
    FAILED = "failed"
    CANCELED = "canceled"
    REQUIRES_ACTION = "requires_action"


# Gateway intent statuses mapped to our checkout states
GATEWAY_STATUS_MAP = {
    "requires_payment_method": IntentStatus.CREATED,
    "requires_confirmation": IntentStatus.CREATED,
    "processing": IntentStatus.CREATED,
    "requires_action": IntentStatus.REQUIRES_ACTION,
    "succeeded": IntentStatus.SUCCEEDED,
    "canceled": IntentStatus.CANCELED,
}


class PaymentIntentRecord(BaseModel):
    """Our record of a gateway payment intent; ``_id`` is the gateway intent id."""
    id: str = Field(alias="_id")
    user_id: str
    amount: float = Field(gt=0)
    currency: str = "usd"
    status: IntentStatus = IntentStatus.CREATED
    metadata: Dict[str, Any] = Field(default_factory=dict)
    order_id: Optional[str] = None
    last_error: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    
    class Config:
        populate_by_name = True
        use_enum_values = True
