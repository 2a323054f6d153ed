"""
MongoDB database connection
Using motor (async MongoDB driver)
"""
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient

from filegate.config import settings

logger = logging.getLogger(__name__)

# Global database client
mongodb_client: Optional[AsyncIOMotorClient] = None
database = None


async def connect_db(url: Optional[str] = None, database_name: Optional[str] = None):
    """Connect to MongoDB"""
    global mongodb_client, database

    url = url or settings.MONGODB_URL
    if not url:
        raise ValueError("MONGODB_URL is not configured")

    mongodb_client = AsyncIOMotorClient(url)
    database = mongodb_client[database_name or settings.DATABASE_NAME]

    # Test connection
    await mongodb_client.admin.command('ping')
    logger.info(f"Connected to MongoDB: {database.name}")

    await create_indexes()
    return database


async def close_db():
    """Close MongoDB connection"""
    global mongodb_client, database

    if mongodb_client:
        mongodb_client.close()
        mongodb_client = None
        database = None
        logger.info("MongoDB connection closed")


async def get_database():
    """Get database instance"""
    return database


async def create_indexes():
    """Create indexes for the account and credential collections"""
    await database.storage_accounts.create_index("id", unique=True)
    await database.storage_accounts.create_index([("company_id", 1), ("is_default", 1)])
    await database.storage_credentials.create_index("account_id", unique=True)
    logger.info("Database indexes created")
