"""
Tests for the cart aggregate.
"""
import random

import pytest
from bson import ObjectId

from app.core.exceptions import NotFoundError, InsufficientStockError, InvalidQuantityError
from app.models.cart import compute_cart_totals
from app.services.cart_service import CartService


def assert_totals_consistent(cart):
    assert cart["total_items"] == sum(item["quantity"] for item in cart["items"])
    assert cart["total_amount"] == pytest.approx(
        sum(item["price"] * item["quantity"] for item in cart["items"])
    )


class TestCartTotals:
    """Test derived cart totals."""
    
    def test_empty_cart_totals(self):
        """An empty cart has no items and costs nothing."""
        assert compute_cart_totals([]) == {"total_items": 0, "total_amount": 0.0}
    
    def test_totals_from_lines(self):
        """Totals are the sums of price x quantity and of quantities."""
        totals = compute_cart_totals([
            {"product_id": "a", "quantity": 2, "price": 19.99},
            {"product_id": "b", "quantity": 1, "price": 5.0}
        ])
        assert totals["total_items"] == 3
        assert totals["total_amount"] == 44.98


class TestCartMutations:
    """Test cart add/update/remove/clear."""
    
    @pytest.mark.asyncio
    async def test_cart_created_lazily(self, db, notifier, user):
        """Reading a missing cart creates an empty one."""
        service = CartService(db, notifier)
        cart = await service.get_or_create_cart(user["_id"])
        assert cart["items"] == []
        assert cart["total_items"] == 0
        assert await db.carts.count_documents({"user_id": user["_id"]}) == 1
    
    @pytest.mark.asyncio
    async def test_add_item_snapshots_price(self, db, notifier, user, make_product):
        """Adding a product stores its current price and updates totals."""
        product_id = await make_product(price=50.0, stock=10)
        service = CartService(db, notifier)
        
        cart = await service.add_item(user["_id"], product_id, 2)
        
        assert cart["items"][0]["price"] == 50.0
        assert cart["total_items"] == 2
        assert cart["total_amount"] == 100.0
    
    @pytest.mark.asyncio
    async def test_add_existing_item_increases_quantity(self, db, notifier, user, make_product):
        """Adding a product already in the cart bumps its quantity."""
        product_id = await make_product(stock=10)
        service = CartService(db, notifier)
        
        await service.add_item(user["_id"], product_id, 2)
        cart = await service.add_item(user["_id"], product_id, 3)
        
        assert len(cart["items"]) == 1
        assert cart["items"][0]["quantity"] == 5
        assert cart["total_items"] == 5
    
    @pytest.mark.asyncio
    async def test_add_beyond_stock_rejected(self, db, notifier, user, make_product):
        """The combined quantity may not exceed stock."""
        product_id = await make_product(stock=3)
        service = CartService(db, notifier)
        
        await service.add_item(user["_id"], product_id, 2)
        with pytest.raises(InsufficientStockError):
            await service.add_item(user["_id"], product_id, 2)
        
        cart = await service.get_or_create_cart(user["_id"])
        assert cart["items"][0]["quantity"] == 2
    
    @pytest.mark.asyncio
    async def test_add_unknown_product(self, db, notifier, user):
        """Unknown or malformed product ids are not found."""
        service = CartService(db, notifier)
        with pytest.raises(NotFoundError):
            await service.add_item(user["_id"], "not-an-object-id", 1)
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1, 101])
    async def test_add_invalid_quantity(self, db, notifier, user, make_product, quantity):
        """Quantities outside 1..100 are rejected."""
        product_id = await make_product(stock=500)
        service = CartService(db, notifier)
        with pytest.raises(InvalidQuantityError):
            await service.add_item(user["_id"], product_id, quantity)
    
    @pytest.mark.asyncio
    async def test_update_quantity_zero_removes_line(self, db, notifier, user, make_product):
        """Setting a quantity of 0 removes the item."""
        product_id = await make_product()
        service = CartService(db, notifier)
        await service.add_item(user["_id"], product_id, 2)
        
        cart = await service.update_item_quantity(user["_id"], product_id, 0)
        
        assert cart["items"] == []
        assert cart["total_amount"] == 0.0
    
    @pytest.mark.asyncio
    async def test_update_missing_item(self, db, notifier, user, make_product):
        """Updating an item that is not in the cart fails."""
        product_id = await make_product()
        service = CartService(db, notifier)
        with pytest.raises(NotFoundError):
            await service.update_item_quantity(user["_id"], product_id, 1)
    
    @pytest.mark.asyncio
    async def test_remove_and_clear(self, db, notifier, user, make_product):
        """Removing one line keeps the rest; clearing empties the cart."""
        first = await make_product(price=10.0)
        second = await make_product(price=20.0, name="Chair")
        service = CartService(db, notifier)
        await service.add_item(user["_id"], first, 1)
        await service.add_item(user["_id"], second, 2)
        
        cart = await service.remove_item(user["_id"], first)
        assert [item["product_id"] for item in cart["items"]] == [second]
        assert cart["total_amount"] == 40.0
        
        cart = await service.clear_cart(user["_id"])
        assert cart["items"] == []
        assert await service.get_cart_count(user["_id"]) == 0
    
    @pytest.mark.asyncio
    async def test_random_mutations_keep_totals_consistent(self, db, notifier, user, make_product):
        """Totals always equal the sums over the stored lines."""
        rng = random.Random(7)
        product_ids = [await make_product(price=rng.choice([1.25, 9.99, 50.0]), stock=1000) for _ in range(4)]
        service = CartService(db, notifier)
        
        for _ in range(40):
            product_id = rng.choice(product_ids)
            action = rng.choice(["add", "update", "remove"])
            try:
                if action == "add":
                    await service.add_item(user["_id"], product_id, rng.randint(1, 5))
                elif action == "update":
                    await service.update_item_quantity(user["_id"], product_id, rng.randint(0, 10))
                else:
                    await service.remove_item(user["_id"], product_id)
            except (NotFoundError, InvalidQuantityError):
                pass
            
            stored = await db.carts.find_one({"user_id": user["_id"]})
            assert_totals_consistent(stored)
    
    @pytest.mark.asyncio
    async def test_mutation_publishes_cart_updated(self, db, notifier, publisher, user, make_product):
        """Every cart mutation is announced on the user's channel."""
        product_id = await make_product()
        service = CartService(db, notifier)
        await service.add_item(user["_id"], product_id, 1)
        
        assert "cart:updated" in publisher.names_for("user:user-1")


class TestCartDetails:
    """Test the detailed cart view."""
    
    @pytest.mark.asyncio
    async def test_price_change_and_stock_warnings(self, db, notifier, user, make_product):
        """Lines flag catalog price changes and stock shortfalls."""
        product_id = await make_product(price=50.0, stock=5)
        service = CartService(db, notifier)
        await service.add_item(user["_id"], product_id, 4)
        
        await db.products.update_one(
            {"_id": ObjectId(product_id)},
            {"$set": {"price": 55.0, "stock": 2}}
        )
        
        details = await service.get_cart_with_details(user["_id"])
        line = details["items"][0]
        assert line.price == 50.0
        assert line.current_price == 55.0
        assert line.price_changed is True
        assert line.stock_warning is True
        assert line.image == "https://cdn.example.com/lamp.jpg"
    
    @pytest.mark.asyncio
    async def test_deleted_product_shown_unavailable(self, db, notifier, user, make_product):
        """A product removed from the catalog stays visible but unavailable."""
        product_id = await make_product()
        service = CartService(db, notifier)
        await service.add_item(user["_id"], product_id, 1)
        
        await db.products.delete_one({"_id": ObjectId(product_id)})
        
        details = await service.get_cart_with_details(user["_id"])
        assert details["items"][0].available is False
