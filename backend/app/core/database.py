import logging

import pymongo
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from app.core.config import settings

logger = logging.getLogger(__name__)

# Global MongoDB client
_client: AsyncIOMotorClient = None
_database: AsyncIOMotorDatabase = None


async def connect_to_mongo():
    """Connect to MongoDB."""
    global _client, _database
    _client = AsyncIOMotorClient(settings.MONGODB_URI)
    _database = _client[settings.MONGODB_DB_NAME]
    logger.info(f"Connected to MongoDB: {settings.MONGODB_DB_NAME}")


async def close_mongo_connection():
    """Close MongoDB connection."""
    global _client
    if _client:
        _client.close()
        logger.info("Closed MongoDB connection")


def get_database() -> AsyncIOMotorDatabase:
    """Get MongoDB database instance."""
    return _database


async def ensure_indexes(db: AsyncIOMotorDatabase):
    """Create the indexes the checkout flow relies on."""
    # One cart per user
    await db.carts.create_index("user_id", unique=True)
    
    await db.orders.create_index([("user_id", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)])
    await db.orders.create_index("payment_status")
    await db.orders.create_index("order_status")
    # Idempotency key: at most one order per payment intent
    await db.orders.create_index("payment_intent_id", unique=True, sparse=True)
    
    await db.coupons.create_index("code", unique=True)
    await db.coupons.create_index("expiry_date")
    await db.coupons.create_index("is_active")
    
    await db.payment_intents.create_index("user_id")
    await db.payment_intents.create_index("status")
    logger.info("MongoDB indexes ensured")
