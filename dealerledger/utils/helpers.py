"""
Helper utility functions
"""
from bson import ObjectId
from typing import Any, Dict, List, Optional
from datetime import datetime
import secrets
import time
import pytz

from dealerledger.config.settings import settings

LOCAL_TZ = pytz.timezone(settings.TIMEZONE)

def serialize_doc(doc: Dict) -> Dict:
    """Convert MongoDB document to JSON-serializable format"""
    if doc is None:
        return None

    if "_id" in doc and isinstance(doc["_id"], ObjectId):
        doc["_id"] = str(doc["_id"])

    # Convert any nested ObjectIds or datetimes
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            doc[key] = str(value)
        elif isinstance(value, datetime):
            doc[key] = to_local_iso(value)
        elif isinstance(value, list):
            doc[key] = [serialize_doc(item) if isinstance(item, dict) else
                        str(item) if isinstance(item, ObjectId) else item for item in value]
        elif isinstance(value, dict):
            doc[key] = serialize_doc(value)

    return doc

def serialize_docs(docs: List[Dict]) -> List[Dict]:
    """Convert list of MongoDB documents to JSON-serializable format"""
    return [serialize_doc(doc) for doc in docs]

def to_local_iso(value: datetime) -> str:
    """Naive datetimes from the DB are UTC"""
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(LOCAL_TZ).isoformat()

def to_local_date(value: Optional[datetime]) -> Optional[str]:
    """dd/mm/YYYY in the dealership's timezone, as printed on statements"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(LOCAL_TZ).strftime("%d/%m/%Y")

def to_amount(value: Any) -> float:
    """Safe number: missing or malformed amounts count as 0"""
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0

def round_money(value: float) -> float:
    return round(float(value), 2)

def generate_receipt_number() -> str:
    """RCPT-<ms timestamp>-<3 random digits>"""
    return f"RCPT-{int(time.time() * 1000)}-{secrets.randbelow(1000):03d}"

def paginate(page: int, limit: int) -> tuple[int, int]:
    """Clamp page/limit and return (skip, limit)"""
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or settings.DEFAULT_PAGE_SIZE), settings.MAX_PAGE_SIZE))
    return (page - 1) * limit, limit

def generate_booking_number() -> str:
    """BK-<ms timestamp>"""
    return f"BK-{int(time.time() * 1000)}"
