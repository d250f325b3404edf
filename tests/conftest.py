"""
Centralized Test Configuration.

Every test gets a fresh in-memory Motor-compatible database (mongomock-motor)
wired into the global ``db_config``; multi-document writes run in best-effort
mode since the mock has no transactions.
"""

from datetime import datetime
from typing import Dict, List, Optional

import pytest
from bson import ObjectId
from httpx import AsyncClient, ASGITransport
from mongomock_motor import AsyncMongoMockClient

from dealerledger.config.database import db_config, Collections
from dealerledger.main import app
from dealerledger.utils.auth import create_access_token

ACTOR = "user-1"
MODEL_ID = str(ObjectId())
COLOR_ID = str(ObjectId())


@pytest.fixture(autouse=True)
async def database():
    """Fresh database per test, restored afterwards."""
    original = (db_config.client, db_config.database, db_config.supports_transactions)

    client = AsyncMongoMockClient()
    db_config.client = client
    db_config.database = client["dealer_ledger_test"]
    db_config.supports_transactions = False
    await db_config.ensure_indexes()

    yield db_config.database

    db_config.client, db_config.database, db_config.supports_transactions = original


class Seeder:
    """Inserts catalog and booking documents directly, bypassing the services."""

    async def _insert(self, collection: str, doc: Dict) -> Dict:
        doc.setdefault("created_at", datetime.utcnow())
        doc.setdefault("updated_at", doc["created_at"])
        result = await db_config.get_collection(collection).insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def subdealer(self, name: str = "Metro Motors") -> str:
        doc = await self._insert(Collections.SUBDEALERS, {"name": name, "type": "B2B"})
        return str(doc["_id"])

    async def bank(self, name: str = "HDFC Bank") -> str:
        doc = await self._insert(Collections.BANKS, {"name": name, "ifsc": "HDFC0000123"})
        return str(doc["_id"])

    async def cash_location(self, name: str = "Main Counter") -> str:
        doc = await self._insert(Collections.CASH_LOCATIONS, {"name": name})
        return str(doc["_id"])

    async def booking(self, discounted_amount: float = 100000, booking_type: str = "BRANCH",
                      subdealer_id: Optional[str] = None, status: str = "APPROVED",
                      created_at: Optional[datetime] = None,
                      price_components: Optional[List[Dict]] = None, **extra) -> Dict:
        doc = {
            "booking_number": f"BK-{ObjectId()}",
            "booking_type": booking_type,
            "subdealer_id": subdealer_id,
            "model_id": extra.pop("model_id", MODEL_ID),
            "color_id": extra.pop("color_id", COLOR_ID),
            "discounted_amount": discounted_amount,
            "received_amount": 0.0,
            "debit_total": 0.0,
            "balance_amount": discounted_amount,
            "status": status,
            "vehicle_id": None,
            "ledger_entries": [],
            "receipts": [],
            "price_components": price_components or [],
            "version": 0,
        }
        if created_at is not None:
            doc["created_at"] = created_at
        doc.update(extra)
        return await self._insert(Collections.BOOKINGS, doc)

    async def subdealer_booking(self, subdealer_id: str, discounted_amount: float = 100000, **extra) -> Dict:
        return await self.booking(
            discounted_amount=discounted_amount, booking_type="SUBDEALER", subdealer_id=subdealer_id, **extra
        )

    async def vehicle(self, status: str = "in_stock", created_at: Optional[datetime] = None, **extra) -> Dict:
        doc = {
            "model_id": extra.pop("model_id", MODEL_ID),
            "color_id": extra.pop("color_id", COLOR_ID),
            "status": status,
        }
        if created_at is not None:
            doc["created_at"] = created_at
        doc.update(extra)
        return await self._insert(Collections.VEHICLES, doc)

    async def commission_master(self, subdealer_id: str, rates: List[Dict], model_id: str = MODEL_ID) -> Dict:
        return await self._insert(Collections.COMMISSION_MASTERS, {
            "subdealer_id": subdealer_id,
            "model_id": model_id,
            "commission_rates": rates,
        })

    async def get(self, collection: str, doc_id) -> Optional[Dict]:
        return await db_config.get_collection(collection).find_one({"_id": ObjectId(str(doc_id))})

    async def count(self, collection: str, query: Optional[Dict] = None) -> int:
        return await db_config.get_collection(collection).count_documents(query or {})


@pytest.fixture
def seed():
    return Seeder()


@pytest.fixture
def token():
    return create_access_token({"sub": ACTOR, "role": "accounts"})


@pytest.fixture
async def client(token):
    """Authenticated async client for testing."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {token}"},
    ) as ac:
        yield ac


@pytest.fixture
async def anonymous_client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
