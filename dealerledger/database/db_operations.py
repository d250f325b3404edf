"""
Database operations - Generic CRUD functions for all collections
"""
from typing import List, Dict, Optional, Any
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from dealerledger.config.database import db_config
from datetime import datetime


def session_kwargs(session) -> Dict[str, Any]:
    """Only pass ``session=`` to the driver when a transaction is open."""
    return {"session": session} if session is not None else {}


def to_object_id(doc_id: Any) -> Optional[ObjectId]:
    """Coerce a string id to ObjectId, None when malformed"""
    if isinstance(doc_id, ObjectId):
        return doc_id
    try:
        return ObjectId(str(doc_id))
    except (InvalidId, TypeError):
        return None


class DBOperations:
    """Generic database operations for MongoDB collections"""

    @staticmethod
    async def get_all(collection_name: str, filter_query: Dict = None, skip: int = 0, limit: int = 100,
                      sort: Optional[List] = None) -> List[Dict]:
        """Get all documents from a collection with optional filtering"""
        collection = db_config.get_collection(collection_name)
        filter_query = filter_query or {}
        cursor = collection.find(filter_query)
        if sort:
            cursor = cursor.sort(sort)
        cursor = cursor.skip(skip).limit(limit)
        documents = await cursor.to_list(length=limit)
        return documents

    @staticmethod
    async def find_all(collection_name: str, filter_query: Dict, sort: Optional[List] = None,
                       session=None) -> List[Dict]:
        """Every matching document, unpaginated (per-booking entry lists, folds)"""
        collection = db_config.get_collection(collection_name)
        cursor = collection.find(filter_query, **session_kwargs(session))
        if sort:
            cursor = cursor.sort(sort)
        return await cursor.to_list(length=None)

    @staticmethod
    async def get_by_id(collection_name: str, doc_id: str, session=None) -> Optional[Dict]:
        """Get a single document by ID"""
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        collection = db_config.get_collection(collection_name)
        return await collection.find_one({"_id": oid}, **session_kwargs(session))

    @staticmethod
    async def get_one(collection_name: str, filter_query: Dict, session=None) -> Optional[Dict]:
        """Get a single document by filter query"""
        collection = db_config.get_collection(collection_name)
        document = await collection.find_one(filter_query, **session_kwargs(session))
        return document

    @staticmethod
    async def create(collection_name: str, document: Dict, session=None) -> Dict:
        """Create a new document"""
        collection = db_config.get_collection(collection_name)
        document["created_at"] = datetime.utcnow()
        document["updated_at"] = datetime.utcnow()
        result = await collection.insert_one(document, **session_kwargs(session))
        document["_id"] = result.inserted_id
        return document

    @staticmethod
    async def reinsert(collection_name: str, document: Dict, session=None) -> Dict:
        """Put a previously deleted document back unchanged (same _id and timestamps)"""
        collection = db_config.get_collection(collection_name)
        await collection.insert_one(dict(document), **session_kwargs(session))
        return document

    @staticmethod
    async def update(collection_name: str, doc_id: str, update_data: Dict, session=None) -> Optional[Dict]:
        """Update a document by ID"""
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        collection = db_config.get_collection(collection_name)
        update_data["updated_at"] = datetime.utcnow()
        return await collection.find_one_and_update(
            {"_id": oid},
            {"$set": update_data},
            return_document=ReturnDocument.AFTER,
            **session_kwargs(session),
        )

    @staticmethod
    async def update_where(collection_name: str, filter_query: Dict, update_ops: Dict,
                           session=None) -> Optional[Dict]:
        """Apply raw update operators when the filter still matches.

        Returns the updated document, or None when nothing matched. Callers use
        the filter to express preconditions (expected version, expected status).
        """
        collection = db_config.get_collection(collection_name)
        update_ops.setdefault("$set", {})["updated_at"] = datetime.utcnow()
        return await collection.find_one_and_update(
            filter_query,
            update_ops,
            return_document=ReturnDocument.AFTER,
            **session_kwargs(session),
        )

    @staticmethod
    async def delete(collection_name: str, doc_id: str, session=None) -> bool:
        """Delete a document by ID"""
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        collection = db_config.get_collection(collection_name)
        result = await collection.delete_one({"_id": oid}, **session_kwargs(session))
        return result.deleted_count > 0

    @staticmethod
    async def count(collection_name: str, filter_query: Dict = None) -> int:
        """Count documents in a collection"""
        collection = db_config.get_collection(collection_name)
        filter_query = filter_query or {}
        count = await collection.count_documents(filter_query)
        return count

db_ops = DBOperations()
