"""
Order service for managing order business logic and status transitions.
"""
import logging
import re
from typing import List, Optional, Dict, Tuple, Any
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.exceptions import NotFoundError, InvalidInputError, InsufficientStockError, ConflictError
from app.models.order import OrderStatus, PaymentStatus
from app.models.product import primary_image
from app.services.notification_service import NotificationService
from app.services.stock_ledger import StockLedger
from app.utils.helpers import build_pagination, parse_object_id, round_money
from app.utils.pricing import calculate_order_totals

logger = logging.getLogger(__name__)

SORT_FIELDS = {"created_at", "updated_at", "total", "order_status", "payment_status"}
HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")


class OrderService:
    """Service class for order management business logic."""

    # Valid status transitions
    STATUS_TRANSITIONS = {
        "pending": ["processing", "on-hold", "cancelled"],
        "on-hold": ["processing", "cancelled"],
        "processing": ["shipped", "on-hold", "cancelled"],
        "shipped": ["delivered", "cancelled"],
        "delivered": [],  # Final state
        "cancelled": []   # Final state
    }

    def __init__(self, db: AsyncIOMotorDatabase, notifier: NotificationService = None):
        self.db = db
        self.notifier = notifier or NotificationService()
        self.stock = StockLedger(db, self.notifier)

    @staticmethod
    def validate_status_transition(current_status: str, new_status: str) -> Tuple[bool, Optional[str]]:
        """
        Validate if status transition is allowed.
        Returns (is_valid, error_message)
        """
        if current_status not in OrderService.STATUS_TRANSITIONS:
            return False, f"Invalid current status: {current_status}"

        if new_status not in OrderService.STATUS_TRANSITIONS:
            return False, f"Invalid order status: {new_status}"

        # Tracking or notes updates keep the status
        if new_status == current_status:
            return True, None

        valid_next_statuses = OrderService.STATUS_TRANSITIONS[current_status]

        if new_status not in valid_next_statuses:
            if not valid_next_statuses:
                return False, f"Order is in final state '{current_status}' and cannot be modified"
            return False, f"Cannot transition from '{current_status}' to '{new_status}'. Valid transitions: {', '.join(valid_next_statuses)}"

        return True, None

    async def _get_order(self, order_id: str) -> dict:
        oid = parse_object_id(order_id)
        if oid is None:
            raise InvalidInputError("Invalid order ID")

        order = await self.db.orders.find_one({"_id": oid})
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def get_user_order(self, user: dict, order_id: str) -> dict:
        """Get one of the user's orders; other users' orders read as not found."""
        order = await self._get_order(order_id)
        if order["user_id"] != str(user["_id"]) and user.get("role") != "admin":
            raise NotFoundError("Order not found")
        return order

    async def list_user_orders(
        self,
        user: dict,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None
    ) -> Dict[str, Any]:
        """Paginated orders of one user, newest first."""
        query: Dict[str, Any] = {"user_id": str(user["_id"])}
        if status:
            query["order_status"] = status

        skip = (page - 1) * limit
        total = await self.db.orders.count_documents(query)
        orders = await self.db.orders.find(query).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)

        return {
            "orders": orders,
            "pagination": build_pagination(page, limit, total)
        }

    @staticmethod
    def build_admin_query(
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        search: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Filter for the admin order list.

        ``search`` matches order or payment status, a full or partial order
        id, or a user id.
        """
        query: Dict[str, Any] = {}
        if status:
            query["order_status"] = status
        if payment_status:
            query["payment_status"] = payment_status

        if search:
            pattern = re.escape(search)
            conditions: List[Dict[str, Any]] = [
                {"order_status": {"$regex": pattern, "$options": "i"}},
                {"payment_status": {"$regex": pattern, "$options": "i"}},
                {"user_id": search},
            ]
            if HEX_PATTERN.match(search):
                oid = parse_object_id(search) if len(search) == 24 else None
                if oid is not None:
                    conditions.append({"_id": oid})
                else:
                    conditions.append({
                        "$expr": {
                            "$regexMatch": {
                                "input": {"$toString": "$_id"},
                                "regex": search,
                                "options": "i"
                            }
                        }
                    })
            query["$or"] = conditions

        return query

    async def list_all_orders(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Dict[str, Any]:
        """Paginated orders of every user (admin)."""
        query = self.build_admin_query(status, payment_status, search)
        sort_field = sort_by if sort_by in SORT_FIELDS else "created_at"
        direction = 1 if sort_order == "asc" else -1

        skip = (page - 1) * limit
        total = await self.db.orders.count_documents(query)
        orders = await self.db.orders.find(query).sort(sort_field, direction).skip(skip).limit(limit).to_list(length=limit)

        return {
            "orders": orders,
            "pagination": build_pagination(page, limit, total)
        }

    async def _cancel(self, order: dict, changed_by: str, note: Optional[str] = None,
                      extra: Optional[Dict[str, Any]] = None) -> dict:
        """
        Flip an order to cancelled and put its stock back.

        The update is guarded on the status we read, so of two concurrent
        cancellations only one restores stock.
        """
        now = datetime.utcnow()
        update = {
            "order_status": OrderStatus.CANCELLED.value,
            "payment_status": PaymentStatus.REFUNDED.value,
            "cancelled_at": now,
            "updated_at": now,
            **(extra or {})
        }
        cancelled = await self.db.orders.find_one_and_update(
            {"_id": order["_id"], "order_status": order["order_status"]},
            {
                "$set": update,
                "$push": {"status_history": {
                    "status": OrderStatus.CANCELLED.value,
                    "changed_at": now,
                    "changed_by": changed_by,
                    "note": note
                }}
            },
            return_document=ReturnDocument.AFTER
        )
        if cancelled is None:
            current = await self.db.orders.find_one({"_id": order["_id"]})
            if current and current["order_status"] == OrderStatus.CANCELLED.value:
                raise InvalidInputError("Order is already cancelled")
            raise ConflictError("Order was modified by another request, please retry")

        await self.stock.increment_all(
            (item["product"]["_id"], item["quantity"]) for item in order["items"]
        )
        logger.info(f"Order {order['_id']} cancelled by {changed_by}, stock restored")
        return cancelled

    async def cancel_order(self, user: dict, order_id: str, reason: Optional[str] = None) -> dict:
        """Cancel one of the user's own orders and restore its stock."""
        order = await self.get_user_order(user, order_id)
        if order["user_id"] != str(user["_id"]):
            raise NotFoundError("Order not found")

        current_status = order["order_status"]
        if current_status in [OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value]:
            raise InvalidInputError(f"Cannot cancel order in '{current_status}' status")

        cancelled = await self._cancel(order, str(user["_id"]), reason or "Cancelled by customer")

        await self.notifier.notify_user(cancelled["user_id"], "orderCancelled", {
            "order_id": str(cancelled["_id"]),
            "order": cancelled
        })
        await self.notifier.analytics_updated("order_cancelled", {
            "order_id": str(cancelled["_id"]),
            "total": cancelled["total"]
        })
        return cancelled

    async def update_order_status(
        self,
        admin: dict,
        order_id: str,
        new_status: Optional[str] = None,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None
    ) -> dict:
        """
        Update order status with validation and side effects (admin).

        Cancelling through here restores stock exactly like ``cancel_order``.
        """
        order = await self._get_order(order_id)
        current_status = order["order_status"]
        new_status = new_status or current_status

        if new_status not in [s.value for s in OrderStatus]:
            raise InvalidInputError(f"Invalid order status: {new_status}")

        is_valid, error_msg = self.validate_status_transition(current_status, new_status)
        if not is_valid:
            raise InvalidInputError(error_msg)

        extra: Dict[str, Any] = {}
        if tracking_number is not None:
            extra["tracking_number"] = tracking_number
        if notes is not None:
            extra["notes"] = notes
        changed_by = str(admin["_id"])

        if new_status == OrderStatus.CANCELLED.value:
            updated = await self._cancel(order, changed_by, notes, extra)
        else:
            now = datetime.utcnow()
            update: Dict[str, Any] = {"$set": {"order_status": new_status, "updated_at": now, **extra}}
            if new_status != current_status:
                update["$push"] = {"status_history": {
                    "status": new_status,
                    "changed_at": now,
                    "changed_by": changed_by,
                    "note": notes
                }}
            updated = await self.db.orders.find_one_and_update(
                {"_id": order["_id"], "order_status": current_status},
                update,
                return_document=ReturnDocument.AFTER
            )
            if updated is None:
                raise ConflictError("Order was modified by another request, please retry")

        logger.info(f"Order {order_id} status {current_status} -> {new_status} by {changed_by}")

        await self.notifier.notify_user(updated["user_id"], "orderStatusUpdated", {
            "order_id": str(updated["_id"]),
            "old_status": current_status,
            "order_status": updated["order_status"],
            "tracking_number": updated.get("tracking_number"),
            "order": updated
        })
        await self.notifier.analytics_updated("order_status_updated", {
            "order_id": str(updated["_id"]),
            "order_status": updated["order_status"]
        })
        return updated

    async def create_checkout_session(self, user: dict, product_id: str, quantity: int = 1) -> Dict[str, Any]:
        """
        "Buy now" draft for a single product.

        Checks the product and its stock and prices the line; nothing is
        reserved and no cart is touched.
        """
        product = await self.stock.get_product(product_id)
        if product.get("stock", 0) < quantity:
            raise InsufficientStockError(
                f"Only {product.get('stock', 0)} items available in stock",
                product_id=product_id
            )

        line_total = round_money(product["price"] * quantity)
        totals = calculate_order_totals(line_total)
        logger.info(f"Checkout session for user {user['_id']}: {quantity} x {product_id}")

        return {
            "items": [{
                "product_id": str(product["_id"]),
                "name": product.get("name", ""),
                "price": product["price"],
                "quantity": quantity,
                "image": primary_image(product),
                "category": product.get("category"),
                "subtotal": line_total
            }],
            **totals
        }
