from typing import Optional
from fastapi import APIRouter, Depends, status, Query

from app.api.deps import get_current_user, get_current_admin, get_order_service, get_checkout_service
from app.schemas.order import (
    OrderCreate,
    OrderResponse,
    OrderListResponse,
    OrderStatusUpdate,
    CheckoutSessionRequest,
    CheckoutSessionResponse
)
from app.services.checkout_service import CheckoutService
from app.services.order_service import OrderService
from app.utils.helpers import format_document

router = APIRouter()


def _order_list(result: dict) -> dict:
    return {
        "orders": [format_document(dict(order)) for order in result["orders"]],
        "pagination": result["pagination"]
    }


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    current_user: dict = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service)
):
    """
    "Buy now": price a single product without touching the cart.
    
    Nothing is reserved; stock is only taken when the payment succeeds.
    """
    return await order_service.create_checkout_session(
        current_user,
        request.product_id,
        request.quantity
    )


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order: OrderCreate,
    current_user: dict = Depends(get_current_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """
    Create the order for a succeeded payment intent.
    
    This will:
    1. Check the intent succeeded and belongs to the caller
    2. Decrement stock and record the coupon use
    3. Create the order and empty the cart
    
    Calling it again for the same payment intent returns the same order.
    """
    created = await checkout_service.confirm_payment(
        current_user,
        order.payment_intent_id,
        items=[item.model_dump() for item in order.items] if order.items is not None else None,
        shipping_address=order.shipping_address.model_dump() if order.shipping_address else None
    )
    return format_document(dict(created))


@router.get("", response_model=OrderListResponse)
async def get_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None, description="Filter by order status"),
    current_user: dict = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Get the current user's orders, newest first.
    """
    result = await order_service.list_user_orders(current_user, page, limit, status)
    return _order_list(result)


@router.get("/admin/all", response_model=OrderListResponse)
async def get_all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Status, full or partial order ID, or user ID"),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    admin: dict = Depends(get_current_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Get every order (admin only).
    """
    result = await order_service.list_all_orders(
        page=page,
        limit=limit,
        status=status,
        payment_status=payment_status,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order
    )
    return _order_list(result)


@router.patch("/admin/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: str,
    request: OrderStatusUpdate,
    admin: dict = Depends(get_current_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Update order status (admin only).
    
    **Valid transitions:**
    - pending → processing, on-hold, cancelled
    - on-hold → processing, cancelled
    - processing → shipped, on-hold, cancelled
    - shipped → delivered, cancelled
    
    Cancelling restores stock and marks the payment refunded.
    """
    updated = await order_service.update_order_status(
        admin,
        order_id,
        new_status=request.status,
        tracking_number=request.tracking_number,
        notes=request.notes
    )
    return format_document(dict(updated))


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Get order details.
    
    Users can only see their own orders.
    """
    order = await order_service.get_user_order(current_user, order_id)
    return format_document(dict(order))


@router.patch("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Cancel an order.
    
    Delivered or already cancelled orders cannot be cancelled.
    Stock is restored for every item.
    """
    cancelled = await order_service.cancel_order(current_user, order_id)
    return format_document(dict(cancelled))
