"""
Database Helper Functions

MongoDB helpers used by the services. Every helper takes the database handle
explicitly so request handlers can receive it through `Depends(get_db)`.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import DatabaseUnavailable
from settings import settings

_client = None
db = None

if settings.database_url and settings.database_name:
    _client = MongoClient(settings.database_url)
    db = _client[settings.database_name]


def get_db() -> Database:
    if db is None:
        raise DatabaseUnavailable("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def ensure_indexes(database: Database) -> None:
    """Unique email/phone per account collection, unique order numbers."""
    for name in ("customer", "vendor", "admin"):
        database[name].create_index([("email", ASCENDING)], unique=True)
        database[name].create_index([("phone", ASCENDING)], unique=True)
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("customer_id", ASCENDING)])
    database["order"].create_index([("vendor_id", ASCENDING)])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(_id: Union[str, ObjectId]) -> Optional[ObjectId]:
    if isinstance(_id, ObjectId):
        return _id
    try:
        return ObjectId(_id)
    except (InvalidId, TypeError):
        return None


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


# CRUD helpers

def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    payload = _to_dict(data)
    payload.pop("id", None)
    now = utcnow()
    payload["created_at"] = now
    payload["updated_at"] = now
    result = database[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort: Optional[list] = None,
                  projection: Optional[dict] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(int(limit))
    return [serialize_doc(doc) for doc in cursor]


def get_document_by_id(database: Database, collection_name: str, _id: str,
                       projection: Optional[dict] = None) -> Optional[dict]:
    oid = to_object_id(_id)
    if oid is None:
        return None
    doc = database[collection_name].find_one({"_id": oid}, projection)
    return serialize_doc(doc) if doc else None


def update_document(database: Database, collection_name: str, _id: str, update_data: Dict[str, Any],
                    extra_filter: Optional[dict] = None) -> bool:
    """Apply a $set to one document. `extra_filter` turns the write into a compare-and-set."""
    oid = to_object_id(_id)
    if oid is None:
        return False
    query = {"_id": oid}
    if extra_filter:
        query.update(extra_filter)
    update = {"$set": _to_dict(update_data)}
    update["$set"]["updated_at"] = utcnow()
    result = database[collection_name].update_one(query, update)
    return result.matched_count > 0


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))  # convert ObjectId to string
    return d
