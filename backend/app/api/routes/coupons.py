from typing import Optional
from fastapi import APIRouter, Depends, status, Query

from app.api.deps import get_current_admin, get_coupon_service
from app.schemas.coupon import (
    CouponValidateRequest,
    CouponValidateResponse,
    CouponApplyRequest,
    CouponCreate,
    CouponUpdate,
    CouponResponse
)
from app.services.coupon_service import CouponService
from app.utils.helpers import format_document

router = APIRouter()


def _summary(coupon: Optional[dict]) -> Optional[dict]:
    if not coupon:
        return None
    return {
        "id": str(coupon["_id"]),
        "code": coupon["code"],
        "description": coupon.get("description", ""),
        "discount_type": coupon["discount_type"],
        "discount_value": coupon["discount_value"],
        "maximum_discount_amount": coupon.get("maximum_discount_amount"),
    }


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    request: CouponValidateRequest,
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """
    Check a coupon code against an order amount (public).
    
    Business-rule failures come back with ``is_valid`` false and a reason,
    not as errors.
    """
    result = await coupon_service.validate(request.code, request.order_amount, request.cart_categories)
    return {**result, "coupon": _summary(result["coupon"])}


@router.post("/apply", response_model=CouponResponse)
async def apply_coupon(
    request: CouponApplyRequest,
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """
    Record one use of a coupon (public).
    
    Checkout records coupon use itself when the order is created; this
    endpoint is for flows that track usage outside checkout.
    """
    coupon = await coupon_service.apply(request.coupon_id)
    return format_document(dict(coupon))


@router.get("")
async def list_coupons(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    admin: dict = Depends(get_current_admin),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """
    List coupons (admin only).
    """
    result = await coupon_service.list_coupons(page, limit, search, is_active)
    return {
        "coupons": [CouponResponse(**format_document(dict(c))) for c in result["coupons"]],
        "pagination": result["pagination"]
    }


@router.post("", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    request: CouponCreate,
    admin: dict = Depends(get_current_admin),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """
    Create a coupon (admin only).
    
    The code is stored upper-cased and must be unique.
    """
    coupon = await coupon_service.create_coupon(request.model_dump(), created_by=str(admin["_id"]))
    return format_document(dict(coupon))


@router.get("/{coupon_id}", response_model=CouponResponse)
async def get_coupon(
    coupon_id: str,
    admin: dict = Depends(get_current_admin),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    coupon = await coupon_service.get_coupon(coupon_id)
    return format_document(dict(coupon))


@router.put("/{coupon_id}", response_model=CouponResponse)
async def update_coupon(
    coupon_id: str,
    request: CouponUpdate,
    admin: dict = Depends(get_current_admin),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """
    Update a coupon (admin only).
    """
    coupon = await coupon_service.update_coupon(coupon_id, request.model_dump(exclude_unset=True))
    return format_document(dict(coupon))


@router.delete("/{coupon_id}")
async def delete_coupon(
    coupon_id: str,
    admin: dict = Depends(get_current_admin),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """
    Delete a coupon (admin only).
    """
    await coupon_service.delete_coupon(coupon_id)
    return {"message": "Coupon deleted successfully"}
