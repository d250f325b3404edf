"""
Database configuration and connection management for MongoDB
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from dealerledger.config.settings import settings

load_dotenv()

logger = logging.getLogger(__name__)


class DatabaseConfig:
    """MongoDB database configuration"""

    def __init__(self):
        self.MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
        self.DATABASE_NAME = os.getenv("DATABASE_NAME", "dealer_ledger_db")
        self.client: Optional[AsyncIOMotorClient] = None
        self.database = None
        self.supports_transactions = False

    async def connect_db(self):
        """Connect to MongoDB"""
        try:
            self.client = AsyncIOMotorClient(self.MONGO_URI)
            self.database = self.client[self.DATABASE_NAME]
            # Test connection
            await self.client.admin.command("ping")
            logger.info("✅ Connected to MongoDB: %s", self.DATABASE_NAME)
        except Exception as e:
            logger.error("❌ Error connecting to MongoDB: %s", e)
            raise

        self.supports_transactions = await self._detect_transaction_support()
        logger.info(
            "Multi-document writes run in %s mode",
            "transactional" if self.supports_transactions else "best-effort",
        )
        await self.ensure_indexes()

    async def close_db(self):
        """Close MongoDB connection"""
        if self.client:
            self.client.close()
            logger.info("✅ MongoDB connection closed")

    def get_collection(self, collection_name: str):
        """Get a specific collection"""
        if self.database is None:
            raise Exception("Database not connected")
        return self.database[collection_name]

    async def _detect_transaction_support(self) -> bool:
        """Transactions need a replica set member or a mongos router."""
        mode = settings.MONGO_TRANSACTIONS
        if mode == "on":
            return True
        if mode == "off":
            return False
        try:
            hello = await self.client.admin.command("hello")
        except Exception as e:
            logger.warning("Transaction support check failed: %s", e)
            return False
        return bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"

    async def ensure_indexes(self):
        """Create the indexes the ledger relies on (idempotent)."""
        await self.get_collection(Collections.ON_ACCOUNT_RECEIPTS).create_index(
            [("subdealer_id", ASCENDING), ("ref_number", ASCENDING)],
            unique=True,
            name="uniq_subdealer_ref",
        )
        await self.get_collection(Collections.LEDGER_ENTRIES).create_index(
            [("booking_id", ASCENDING), ("created_at", ASCENDING)]
        )
        await self.get_collection(Collections.LEDGER_ENTRIES).create_index(
            [("approval_status", ASCENDING), ("created_at", DESCENDING)]
        )
        await self.get_collection(Collections.COMMISSION_PAYMENTS).create_index(
            [("subdealer_id", ASCENDING), ("year", ASCENDING), ("month", ASCENDING)]
        )
        # one live (PENDING/PAID) settlement per period; FAILED ones drop the key
        await self.get_collection(Collections.COMMISSION_PAYMENTS).create_index(
            [("period_key", ASCENDING)],
            unique=True,
            sparse=True,
            name="uniq_live_settlement_period",
        )
        await self.get_collection(Collections.VEHICLES).create_index(
            [("model_id", ASCENDING), ("color_id", ASCENDING), ("status", ASCENDING)]
        )

# Global database instance
db_config = DatabaseConfig()

# Collection names
class Collections:
    BOOKINGS = "bookings"
    LEDGER_ENTRIES = "ledger_entries"
    RECEIPTS = "receipts"
    ON_ACCOUNT_RECEIPTS = "on_account_receipts"
    VEHICLES = "vehicles"

    # Catalog collections (maintained elsewhere, read here)
    SUBDEALERS = "subdealers"
    BANKS = "banks"
    CASH_LOCATIONS = "cash_locations"

    # Commission Collections
    COMMISSION_MASTERS = "commission_masters"
    COMMISSION_PAYMENTS = "commission_payments"
