"""
MongoDB access helpers.

Each Pydantic model in ``schemas.py`` maps to a collection named after the
lowercase class name (e.g. ``LinkRequest`` -> ``"linkrequest"``).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from errors import ValidationError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


def connect(url: str, name: str):
    client = MongoClient(url, serverSelectionTimeoutMS=30000, socketTimeoutMS=45000)
    logger.info("Connected to MongoDB database %s", name)
    return client, client[name]


def ensure_indexes(db: Database) -> None:
    """Create the uniqueness constraints the services rely on (idempotent)."""
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["user"].create_index([("staffId", ASCENDING)], unique=True, sparse=True)
    db["user"].create_index([("role", ASCENDING)])
    db["child"].create_index([("childId", ASCENDING)], unique=True, sparse=True)
    db["child"].create_index([("parent", ASCENDING)])
    db["child"].create_index([("assignedSpecialist", ASCENDING)])
    db["linkrequest"].create_index([("from", ASCENDING), ("to", ASCENDING), ("child", ASCENDING), ("status", ASCENDING)])
    db["referral"].create_index([("parent", ASCENDING), ("specialist", ASCENDING), ("status", ASCENDING)])
    # at most one content aggregate per child; plan documents are unconstrained
    db["exercise"].create_index(
        [("child", ASCENDING)],
        unique=True,
        partialFilterExpression={"kind": "content"},
        name="uniq_content_per_child",
    )
    db["progress"].create_index([("child", ASCENDING)], unique=True)
    db["message"].create_index([("sender", ASCENDING), ("receiver", ASCENDING)])
    db["message"].create_index([("createdAt", DESCENDING)])
    db["notification"].create_index([("recipient", ASCENDING), ("createdAt", DESCENDING)])
    db["devicetoken"].create_index([("user", ASCENDING), ("token", ASCENDING)], unique=True)
    db["center"].create_index([("admin", ASCENDING)])


def utc_now() -> datetime:
    # naive UTC, which is what pymongo hands back by default
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_obj_id(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except Exception:
        raise ValidationError("Invalid id format")


def next_sequence(db: Database, name: str) -> int:
    """Atomically draw the next value of a named counter."""
    doc = db["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(doc["seq"])


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document with createdAt/updatedAt stamps and return it with its _id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = utc_now()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    doc["_id"] = db[collection_name].insert_one(doc).inserted_id
    return doc


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(value: Any) -> Any:
    """Recursively convert ObjectIds and datetimes into JSON-friendly strings."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value
