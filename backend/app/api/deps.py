from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from motor.motor_asyncio import AsyncIOMotorDatabase
from app.core.database import get_database
from app.core.exceptions import UnauthorizedError, ForbiddenError
from app.core.security import decode_access_token
from app.services.cart_service import CartService
from app.services.checkout_service import CheckoutService
from app.services.coupon_service import CouponService
from app.services.notification_service import NotificationService, ADMIN_ROLE
from app.services.order_service import OrderService

# Security scheme
security = HTTPBearer(auto_error=False)


async def get_db() -> AsyncIOMotorDatabase:
    """Dependency to get database instance."""
    return get_database()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Dependency to get the current authenticated principal.

    Tokens are issued by the auth service; the principal is built from the
    claims alone (``sub`` is the user id, ``role`` defaults to ``user``).

    Raises:
        UnauthorizedError: If the token is missing or invalid
    """
    if credentials is None:
        raise UnauthorizedError("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise UnauthorizedError()

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError()

    return {"_id": str(user_id), "role": payload.get("role", "user")}


async def get_current_admin(
    current_user: dict = Depends(get_current_user)
) -> dict:
    """
    Dependency to ensure the current user is an admin.

    Raises:
        ForbiddenError: If user is not an admin
    """
    if current_user.get("role") != ADMIN_ROLE:
        raise ForbiddenError("Only admins can access this endpoint")

    return current_user


def get_notifier(request: Request) -> NotificationService:
    """Notification service bound to the publisher built at startup."""
    return NotificationService(getattr(request.app.state, "publisher", None))


def get_payment_gateway(request: Request):
    return request.app.state.payment_gateway


def get_cart_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier)
) -> CartService:
    return CartService(db, notifier)


def get_coupon_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier)
) -> CouponService:
    return CouponService(db, notifier)


def get_order_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier)
) -> OrderService:
    return OrderService(db, notifier)


def get_checkout_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway=Depends(get_payment_gateway),
    notifier: NotificationService = Depends(get_notifier)
) -> CheckoutService:
    return CheckoutService(db, gateway, notifier)
