"""
Shared fixtures: an in-memory Motor-compatible database, a recording
notification publisher and the simulated payment gateway.
"""
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from app.core.database import ensure_indexes
from app.services.checkout_service import CheckoutService
from app.services.notification_service import NotificationService, RecordingPublisher
from app.services.payment_providers.simulation_service import SimulationService

WEBHOOK_SECRET = "whsec_test_secret"


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["storefront_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier(publisher):
    return NotificationService(publisher)


@pytest.fixture
def gateway():
    return SimulationService(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def checkout(db, gateway, notifier):
    return CheckoutService(db, gateway, notifier)


@pytest.fixture
def user():
    return {"_id": "user-1", "role": "user"}


@pytest.fixture
def other_user():
    return {"_id": "user-2", "role": "user"}


@pytest.fixture
def admin():
    return {"_id": "admin-1", "role": "admin"}


@pytest.fixture
def address():
    return {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "phone": "+15555550100",
        "address": "12 Analytical Way",
        "city": "London",
        "state": "LDN",
        "zip_code": "00000",
        "country": "UK",
        "address_type": "home"
    }


@pytest.fixture
def make_product(db):
    """Insert a catalog product and return its id as a string."""
    async def _make(price=50.0, stock=10, name="Desk Lamp", category="home"):
        result = await db.products.insert_one({
            "_id": ObjectId(),
            "name": name,
            "price": price,
            "stock": stock,
            "category": category,
            "images": [{"url": "https://cdn.example.com/lamp.jpg", "is_primary": True}]
        })
        return str(result.inserted_id)
    return _make


@pytest.fixture
def make_coupon(db):
    """Insert a coupon and return the stored document."""
    async def _make(code="SAVE10", discount_type="percentage", discount_value=10, **overrides):
        coupon = {
            "code": code,
            "description": "",
            "discount_type": discount_type,
            "discount_value": discount_value,
            "minimum_order_amount": 0,
            "maximum_discount_amount": None,
            "expiry_date": datetime.utcnow() + timedelta(days=30),
            "usage_limit": None,
            "used_count": 0,
            "is_active": True,
            "applicable_categories": [],
            "created_by": "admin-1",
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow()
        }
        coupon.update(overrides)
        result = await db.coupons.insert_one(coupon)
        coupon["_id"] = result.inserted_id
        return coupon
    return _make
