"""
MongoDB access helpers shared by all services.

Collections: "users", "products", "orders" in the `MONGODB_DB` database.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

USERS = "users"
PRODUCTS = "products"
ORDERS = "orders"


def get_client(uri: str, timeout_ms: int = 5000) -> MongoClient:
    return MongoClient(uri, serverSelectionTimeoutMS=timeout_ms, tz_aware=True)


def ping(db: Database) -> None:
    db.command({"ping": 1})


def ensure_indexes(db: Database) -> None:
    db[USERS].create_index([("email", ASCENDING)], unique=True)
    db[PRODUCTS].create_index([("category", ASCENDING)])
    db[ORDERS].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])


def connection_stats(db: Database) -> dict:
    """Current/available connection counts from serverStatus."""
    status = db.command({"serverStatus": 1})
    connections = status.get("connections", {})
    return {
        "current": connections.get("current", 0),
        "available": connections.get("available", 100),
    }


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(db: Database, collection: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with createdAt/updatedAt; returns the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True, mode="json")
    else:
        doc = dict(data)
    stamp = now()
    doc.setdefault("createdAt", stamp)
    doc.setdefault("updatedAt", stamp)
    result = db[collection].insert_one(doc)
    data_id = result.inserted_id
    if isinstance(data, dict):
        data["_id"] = data_id
        data.setdefault("createdAt", doc["createdAt"])
        data.setdefault("updatedAt", doc["updatedAt"])
    return str(data_id)


def get_documents(db: Database, collection: str, filter_dict: Optional[dict] = None,
                  projection: Optional[dict] = None, sort: Optional[list] = None,
                  skip: int = 0, limit: int = 0) -> list[dict]:
    cursor = db[collection].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def _isoformat(value: Union[datetime, date]) -> str:
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def serialize(doc: Any) -> Any:
    """Make Mongo documents JSON safe (ObjectId -> str, datetimes -> ISO 8601)."""
    return jsonable_encoder(doc, custom_encoder={ObjectId: str, datetime: _isoformat})
