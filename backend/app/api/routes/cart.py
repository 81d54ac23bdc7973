from fastapi import APIRouter, Depends, status

from app.api.deps import get_current_user, get_cart_service
from app.schemas.cart import (
    AddToCartRequest,
    UpdateCartItemRequest,
    CartResponse,
    CartCountResponse
)
from app.services.cart_service import CartService

router = APIRouter()


@router.get("", response_model=CartResponse)
async def get_cart(
    current_user: dict = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Get the current user's cart with full product details.
    
    Returns:
    - All cart items with current prices and stock
    - Price change warnings
    - Stock availability warnings
    - Total amount and item count
    """
    return await cart_service.get_cart_with_details(str(current_user["_id"]))


@router.get("/count", response_model=CartCountResponse)
async def get_cart_count(
    current_user: dict = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """Number of units in the cart."""
    count = await cart_service.get_cart_count(str(current_user["_id"]))
    return {"count": count}


@router.post("/items", response_model=CartResponse, status_code=status.HTTP_201_CREATED)
async def add_to_cart(
    request: AddToCartRequest,
    current_user: dict = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Add a product to the cart.
    
    Validates:
    - Product exists
    - Sufficient stock available
    
    If product already in cart, increases quantity.
    """
    user_id = str(current_user["_id"])
    
    await cart_service.add_item(
        user_id=user_id,
        product_id=request.product_id,
        quantity=request.quantity
    )
    
    return await cart_service.get_cart_with_details(user_id)


@router.put("/items/{product_id}", response_model=CartResponse)
async def update_cart_item(
    product_id: str,
    request: UpdateCartItemRequest,
    current_user: dict = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Update the quantity of an item in the cart.
    
    Validates stock availability before updating. A quantity of 0 removes the item.
    """
    user_id = str(current_user["_id"])
    
    await cart_service.update_item_quantity(
        user_id=user_id,
        product_id=product_id,
        quantity=request.quantity
    )
    
    return await cart_service.get_cart_with_details(user_id)


@router.delete("/items/{product_id}", response_model=CartResponse)
async def remove_from_cart(
    product_id: str,
    current_user: dict = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Remove an item from the cart.
    """
    user_id = str(current_user["_id"])
    await cart_service.remove_item(user_id, product_id)
    return await cart_service.get_cart_with_details(user_id)


@router.delete("", response_model=CartResponse)
async def clear_cart(
    current_user: dict = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Clear all items from the cart.
    """
    user_id = str(current_user["_id"])
    await cart_service.clear_cart(user_id)
    return await cart_service.get_cart_with_details(user_id)
