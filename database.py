"""
MongoDB access helpers.

Each Pydantic schema in schemas.py maps to a collection named after the
lowercased class name (Trip -> "trip").
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings
from errors import NotFound

logger = logging.getLogger(__name__)

_settings = get_settings()
client = MongoClient(_settings.database_url)
db = client[_settings.database_name]


def get_db() -> Database:
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str, label: str = "Document") -> ObjectId:
    """Parse a path id; a malformed id can never match so it reads as missing."""
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(value: Any) -> Any:
    """Convert a MongoDB document (recursively) to JSON-serializable data"""
    if isinstance(value, BaseModel):
        return serialize_doc(value.model_dump())
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize_doc(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def pagination(page: int, limit: int, count: int, total: int) -> dict:
    return {
        "current": page,
        "total": -(-total // limit) if limit else 0,
        "count": count,
        "total_items": total,
    }


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["session"].create_index("token", unique=True)
    database["discussion"].create_index("trip_id", unique=True)
    # Group chats carry no pair_key, so the index must be sparse
    database["chat"].create_index("pair_key", unique=True, sparse=True)
    database["chat"].create_index([("participants.user_id", ASCENDING), ("last_activity", DESCENDING)])
    database["message"].create_index([("chat_id", ASCENDING), ("created_at", DESCENDING)])
    database["message"].create_index([("trip_id", ASCENDING), ("message_type", ASCENDING)])
    database["rating"].create_index(
        [("reviewer_id", ASCENDING), ("target_type", ASCENDING), ("target_id", ASCENDING)],
        unique=True,
    )
    database["order"].create_index([("buyer_id", ASCENDING), ("status", ASCENDING)])
    database["order"].create_index([("seller_id", ASCENDING), ("status", ASCENDING)])
    logger.info(f"Indexes ensured on database {database.name}")
