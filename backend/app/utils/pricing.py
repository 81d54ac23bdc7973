from typing import Dict

from app.core.config import settings
from app.utils.helpers import round_money


def calculate_order_totals(subtotal: float, discount: float = 0.0) -> Dict[str, float]:
    """
    Price an order.
    
    Shipping is free above the threshold, otherwise flat rate; tax is taken
    on the subtotal. Shipping and tax are added before the discount is
    subtracted, and the total never drops below zero.
    """
    subtotal = round_money(subtotal)
    shipping = 0.0 if subtotal > settings.FREE_SHIPPING_THRESHOLD else settings.SHIPPING_FLAT_RATE
    tax = round_money(subtotal * settings.TAX_RATE)
    discount = round_money(min(max(discount, 0.0), subtotal))
    total = round_money(max(subtotal + shipping + tax - discount, 0.0))
    return {
        "subtotal": subtotal,
        "shipping": round_money(shipping),
        "tax": tax,
        "discount": discount,
        "total": total,
    }
