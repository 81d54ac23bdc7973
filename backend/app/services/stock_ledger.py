"""
Stock ledger: the only writer of product stock.

Every change is a single conditional ``$inc`` against the stored document, so
concurrent checkouts cannot both pass a stale stock read and oversell.
"""

import logging
from typing import Iterable, List, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.exceptions import NotFoundError, InsufficientStockError, InvalidQuantityError
from app.services.notification_service import NotificationService
from app.utils.helpers import parse_object_id

logger = logging.getLogger(__name__)

# (product_id, quantity)
StockLine = Tuple[str, int]


class StockLedger:
    """Atomic per-product stock adjustments."""

    def __init__(self, db: AsyncIOMotorDatabase, notifier: NotificationService = None):
        self.db = db
        self.notifier = notifier or NotificationService()

    @staticmethod
    def _product_filter(product_id: str) -> dict:
        oid = parse_object_id(product_id)
        if oid is None:
            raise NotFoundError(f"Product not found: {product_id}")
        return {"_id": oid}

    async def get_product(self, product_id: str) -> dict:
        """Read a product, raising NotFoundError when it no longer exists."""
        product = await self.db.products.find_one(self._product_filter(product_id))
        if not product:
            raise NotFoundError(f"Product not found: {product_id}")
        return product

    async def decrement(self, product_id: str, quantity: int) -> int:
        """
        Take ``quantity`` units out of stock.

        Returns:
            Remaining stock

        Raises:
            InsufficientStockError: if fewer than ``quantity`` units are left
        """
        if quantity < 1:
            raise InvalidQuantityError("Quantity must be at least 1")

        query = self._product_filter(product_id)
        query["stock"] = {"$gte": quantity}
        updated = await self.db.products.find_one_and_update(
            query,
            {"$inc": {"stock": -quantity}},
            return_document=ReturnDocument.AFTER
        )

        if updated is None:
            # Either the product vanished or there is not enough stock left
            product = await self.get_product(product_id)
            raise InsufficientStockError(
                f"Insufficient stock for {product.get('name', product_id)}. "
                f"Available: {product.get('stock', 0)}, Requested: {quantity}",
                product_id=product_id
            )

        logger.info(f"Stock for {product_id} decremented by {quantity}, now {updated['stock']}")
        return updated["stock"]

    async def increment(self, product_id: str, quantity: int) -> int:
        """Put ``quantity`` units back into stock."""
        if quantity < 1:
            raise InvalidQuantityError("Quantity must be at least 1")

        updated = await self.db.products.find_one_and_update(
            self._product_filter(product_id),
            {"$inc": {"stock": quantity}},
            return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise NotFoundError(f"Product not found: {product_id}")

        logger.info(f"Stock for {product_id} incremented by {quantity}, now {updated['stock']}")
        return updated["stock"]

    async def check_available(self, lines: Iterable[StockLine]) -> None:
        """
        Fast read-only pre-check for user-facing rejection.

        The authoritative guard is still the conditional update in ``decrement``.
        """
        for product_id, quantity in lines:
            product = await self.get_product(product_id)
            if product.get("stock", 0) < quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for {product.get('name', product_id)}. "
                    f"Available: {product.get('stock', 0)}",
                    product_id=product_id
                )

    async def decrement_all(self, lines: Iterable[StockLine]) -> List[StockLine]:
        """
        Decrement every line or none of them.

        On the first failure, lines already decremented are restored before
        the error is re-raised.
        """
        applied: List[StockLine] = []
        try:
            for product_id, quantity in lines:
                await self.decrement(product_id, quantity)
                applied.append((product_id, quantity))
        except Exception:
            if applied:
                logger.warning(f"Rolling back {len(applied)} stock decrement(s)")
                await self.increment_all(applied)
            raise

        await self.notifier.notify_admins("products:updated", {
            "product_ids": [product_id for product_id, _ in applied]
        })
        return applied

    async def increment_all(self, lines: Iterable[StockLine]) -> None:
        """
        Restore stock for every line.

        A product deleted from the catalog since the order cannot be restocked;
        that line is logged and skipped so the remaining lines are still restored.
        """
        restored = []
        for product_id, quantity in lines:
            try:
                await self.increment(product_id, quantity)
                restored.append(product_id)
            except NotFoundError:
                logger.error(f"Cannot restore {quantity} unit(s) of deleted product {product_id}")

        if restored:
            await self.notifier.notify_admins("products:updated", {"product_ids": restored})
