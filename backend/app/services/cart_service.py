import logging
from typing import List, Dict
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.config import settings
from app.core.exceptions import (
    NotFoundError,
    InsufficientStockError,
    InvalidQuantityError,
)
from app.models.cart import Cart, CartItem, compute_cart_totals
from app.models.product import primary_image
from app.schemas.cart import CartItemResponse
from app.services.notification_service import NotificationService
from app.utils.helpers import parse_object_id, round_money

logger = logging.getLogger(__name__)


class CartService:
    """Per-user cart: lines of (product, quantity, price snapshot) with derived totals."""

    def __init__(self, db: AsyncIOMotorDatabase, notifier: NotificationService = None):
        self.db = db
        self.notifier = notifier or NotificationService()

    async def get_or_create_cart(self, user_id: str) -> dict:
        """Get or create a cart for a user."""
        cart_data = Cart(user_id=user_id).model_dump(by_alias=True, exclude={"id", "user_id"})
        # Upsert so two first requests for the same user still leave one cart
        return await self.db.carts.find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": cart_data},
            upsert=True,
            return_document=ReturnDocument.AFTER
        )

    async def _get_product(self, product_id: str) -> dict:
        oid = parse_object_id(product_id)
        product = await self.db.products.find_one({"_id": oid}) if oid else None
        if not product:
            raise NotFoundError("Product not found")
        return product

    @staticmethod
    def _check_quantity(quantity: int, allow_zero: bool = False):
        low = 0 if allow_zero else 1
        high = settings.MAX_CART_ITEM_QUANTITY
        if not isinstance(quantity, int) or isinstance(quantity, bool) or not low <= quantity <= high:
            raise InvalidQuantityError(f"Quantity must be between {low} and {high}")

    async def _save(self, cart: dict) -> dict:
        """Recompute totals from the lines and persist them together."""
        totals = compute_cart_totals(cart["items"])
        cart.update(totals)
        cart["updated_at"] = datetime.utcnow()
        await self.db.carts.update_one(
            {"_id": cart["_id"]},
            {"$set": {
                "items": cart["items"],
                "total_items": cart["total_items"],
                "total_amount": cart["total_amount"],
                "updated_at": cart["updated_at"]
            }}
        )
        await self.notifier.notify_user(cart["user_id"], "cart:updated", {
            "user_id": cart["user_id"],
            "cart_id": str(cart["_id"]),
            "total_items": cart["total_items"],
            "total_amount": cart["total_amount"]
        })
        return cart

    async def add_item(self, user_id: str, product_id: str, quantity: int = 1) -> dict:
        """
        Add a product to the cart.

        If the product is already in the cart its quantity is increased; the
        price snapshot is refreshed from the catalog either way.
        """
        self._check_quantity(quantity)
        product = await self._get_product(product_id)

        if product["stock"] < quantity:
            raise InsufficientStockError(
                f"Only {product['stock']} items available in stock",
                product_id=product_id
            )

        cart = await self.get_or_create_cart(user_id)

        existing = next((item for item in cart["items"] if item["product_id"] == product_id), None)
        if existing:
            new_quantity = existing["quantity"] + quantity
            if new_quantity > settings.MAX_CART_ITEM_QUANTITY:
                raise InvalidQuantityError(
                    f"Quantity must be between 1 and {settings.MAX_CART_ITEM_QUANTITY}"
                )
            if new_quantity > product["stock"]:
                raise InsufficientStockError(
                    f"Cannot add {quantity} more items. "
                    f"Only {max(product['stock'] - existing['quantity'], 0)} available",
                    product_id=product_id
                )
            existing["quantity"] = new_quantity
            existing["price"] = product["price"]
        else:
            cart["items"].append(CartItem(
                product_id=product_id,
                quantity=quantity,
                price=product["price"]
            ).model_dump())

        logger.info(f"User {user_id} added {quantity} x {product_id} to cart")
        return await self._save(cart)

    async def update_item_quantity(self, user_id: str, product_id: str, quantity: int) -> dict:
        """Set a line's quantity; zero removes the line."""
        self._check_quantity(quantity, allow_zero=True)
        cart = await self.get_or_create_cart(user_id)

        index = next((i for i, item in enumerate(cart["items"]) if item["product_id"] == product_id), None)
        if index is None:
            raise NotFoundError("Item not found in cart")

        if quantity == 0:
            cart["items"].pop(index)
        else:
            product = await self._get_product(product_id)
            if product["stock"] < quantity:
                raise InsufficientStockError(
                    f"Only {product['stock']} items available in stock",
                    product_id=product_id
                )
            cart["items"][index]["quantity"] = quantity
            cart["items"][index]["price"] = product["price"]

        return await self._save(cart)

    async def remove_item(self, user_id: str, product_id: str) -> dict:
        """Remove item from cart."""
        cart = await self.get_or_create_cart(user_id)

        original_length = len(cart["items"])
        cart["items"] = [item for item in cart["items"] if item["product_id"] != product_id]

        if len(cart["items"]) == original_length:
            raise NotFoundError("Item not found in cart")

        return await self._save(cart)

    async def clear_cart(self, user_id: str) -> dict:
        """Clear all items from cart; the cart itself is kept."""
        cart = await self.get_or_create_cart(user_id)
        cart["items"] = []
        return await self._save(cart)

    async def delete_cart(self, user_id: str) -> None:
        """Drop the cart after a checkout turned it into an order."""
        await self.db.carts.delete_one({"user_id": user_id})
        await self.notifier.notify_user(user_id, "cart:updated", {
            "user_id": user_id,
            "total_items": 0,
            "total_amount": 0.0
        })

    async def get_cart_count(self, user_id: str) -> int:
        """Number of units in the cart, for navbar badges."""
        cart = await self.db.carts.find_one({"user_id": user_id})
        return cart.get("total_items", 0) if cart else 0

    async def get_cart_with_details(self, user_id: str) -> Dict:
        """Get cart with live product details."""
        cart = await self.get_or_create_cart(user_id)

        items_response: List[CartItemResponse] = []
        for item in cart["items"]:
            oid = parse_object_id(item["product_id"])
            product = await self.db.products.find_one({"_id": oid}) if oid else None

            if not product:
                # Product was removed from the catalog; keep the line visible
                items_response.append(CartItemResponse(
                    product_id=item["product_id"],
                    quantity=item["quantity"],
                    price=item["price"],
                    current_price=item["price"],
                    name="Unavailable product",
                    stock=0,
                    subtotal=round_money(item["price"] * item["quantity"]),
                    available=False,
                    stock_warning=True
                ))
                continue

            items_response.append(CartItemResponse(
                product_id=item["product_id"],
                quantity=item["quantity"],
                price=item["price"],
                current_price=product["price"],
                name=product.get("name", ""),
                image=primary_image(product),
                category=product.get("category"),
                stock=product["stock"],
                subtotal=round_money(item["price"] * item["quantity"]),
                price_changed=abs(product["price"] - item["price"]) > 0.01,
                stock_warning=product["stock"] < item["quantity"]
            ))

        return {
            "id": str(cart["_id"]),
            "items": items_response,
            "total_amount": cart.get("total_amount", 0.0),
            "total_items": cart.get("total_items", 0)
        }
