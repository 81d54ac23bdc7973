"""
Domain errors raised by the service layer.

Every error is an ``HTTPException`` so services can raise them directly and
FastAPI renders ``{"detail": ...}`` with the matching status code.
"""
from typing import Optional
from fastapi import HTTPException, status


class StoreError(HTTPException):
    """Base class for storefront errors."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(
            status_code=status_code or self.status_code,
            detail=detail or self.default_detail
        )


class NotFoundError(StoreError):
    """Product, cart line, order or coupon is missing."""
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class InvalidInputError(StoreError):
    """Malformed request data or a business rule rejected the input."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input"


class InvalidQuantityError(InvalidInputError):
    default_detail = "Invalid quantity"


class InsufficientStockError(StoreError):
    """Requested quantity exceeds the live stock."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Insufficient stock"

    def __init__(self, detail: Optional[str] = None, product_id: Optional[str] = None):
        super().__init__(detail)
        self.product_id = product_id


class ConflictError(StoreError):
    """Duplicate work for an idempotency key or an exhausted counter."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict"


class UpstreamFailureError(StoreError):
    """Payment gateway unreachable or returned an unexpected state."""
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment gateway error"


class UnauthorizedError(StoreError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Could not validate credentials"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail)
        self.headers = {"WWW-Authenticate": "Bearer"}


class ForbiddenError(StoreError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not enough permissions"


class WebhookSignatureError(InvalidInputError):
    """Inbound webhook failed signature verification."""
    default_detail = "Invalid webhook signature"
